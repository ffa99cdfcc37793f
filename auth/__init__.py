"""auth/ -- Token lifecycle, providers, and the user / revocation stores.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/. api/ imports from auth/, not the other way
around. auth/dependencies.py is the one module that imports fastapi, because
it is part of the FastAPI dependency injection system.
"""
