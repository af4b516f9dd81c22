"""auth/ -- Authentication, sessions, and authorization for Everglass.

Layer rule: auth/ imports from core/ and crm.models (pure dataclasses) only.
It does NOT import from api/ or crm.store.
api/ imports from auth/, not the other way around.
"""
