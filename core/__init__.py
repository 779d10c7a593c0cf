"""core/ -- Ceremony orchestration, identity resolution, domain models, config.

Layer rule: core/ imports only stdlib + third-party libraries at runtime.
It does NOT import from api/, store/, or client/ (store/base.py is referenced
for type checking only). api/ and store/ import from core/, not the other way.
"""
