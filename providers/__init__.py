"""providers/ -- Cloud inventory clients and the multi-provider aggregator.

Layer rule: providers/ imports core/, auth/models and credentials/.
It does NOT import from api/.
"""
