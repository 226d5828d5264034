# credvault/credentials/__init__.py
"""Proxy entities, the encrypted credential store and the secure repository."""
