"""auth/ -- Accounts, sessions, bearer tokens and device authorization for infst-web.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, web/, jobs/, ratelimit/, or client/.
api/ and web/ import from auth/, not the other way around.
"""
