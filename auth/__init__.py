"""auth/ -- Authentication and authorization core for Warden.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/.
api/ imports from auth/, not the other way around.

Entry point: auth.service.AuthService. Everything else in this package is a
component the service composes (tokens, sessions, blacklist, key pairs,
scopes) or the persistence underneath them (schema, store).
"""
