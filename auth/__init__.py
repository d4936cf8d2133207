"""auth/ -- Webhook authentication and credential vault for Cardinal.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, inventory/, or provisioning/.
api/ and inventory/ import from auth/, not the other way around.
"""
