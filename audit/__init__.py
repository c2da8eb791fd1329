"""audit/ -- Append-only security audit trail for the HR auth service.

Layer rule: audit/ imports only stdlib, core/ and third-party libraries.
It does NOT import from api/ or auth/. api/ writes audit records; auth/ never
does, so its policies stay testable without a second store.
"""
