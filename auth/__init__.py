"""auth/ -- Authentication and authorization package for CloudBoard.

Layer rule: auth/ imports only core/ + third-party libraries.
It does NOT import from api/, credentials/, or providers/.
api/ imports from auth/, not the other way around.
"""
