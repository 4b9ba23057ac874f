"""credentials/ -- Device auth tokens and overlay network join keys.

Layer rule: credentials/ imports from core/ and registry/models only.
"""
