"""auth/ -- Authentication and authorization package for Warden.

Layer rule: auth/ imports core/, ratelimit/, stdlib and third-party libraries.
It does NOT import from api/ or main.py.
api/ and main.py import from auth/, not the other way around.
"""
