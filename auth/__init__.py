"""auth/ -- Authentication and authorization core for Warden.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/ for
settings types. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
