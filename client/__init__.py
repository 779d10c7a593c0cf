"""client/ -- Python calling convention for the passkey HTTP API.

Layer rule: client/ talks to the server over HTTP only. It does NOT import
from api/ or store/.
"""
