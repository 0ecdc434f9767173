"""
Remote Account Service Integration

Key Components:
- chain.py: Middleware chain for outbound requests (session credential, metrics)
- credentials.py: Anti-forgery token and administrator session exchange
- provisioning.py: Handle normalization and account creation
"""
