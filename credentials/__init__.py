"""credentials/ -- Per-user, per-provider cloud credential storage and resolution.

Layer rule: credentials/ imports only core/ and auth/models + third-party
libraries. providers/ and api/ import from here, not the other way around.
"""
