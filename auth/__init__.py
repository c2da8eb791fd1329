"""auth/ -- Authentication, sessions and role-based access for the HR system.

Layer rule: auth/ imports only stdlib, core/ and third-party libraries.
It does NOT import from api/ or audit/.
api/ imports from auth/, not the other way around.
"""
