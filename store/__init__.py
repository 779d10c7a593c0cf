"""store/ -- Persistence for passkey identities, credentials, and challenges.

Layer rule: store/ imports from core/ (models, errors, config) only.
It does NOT import from api/ or client/.
"""
