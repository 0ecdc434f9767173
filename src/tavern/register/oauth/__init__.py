"""
OAuth Identity Verification

Key Components:
- state.py: Single-use state tokens guarding the provider redirect
- tickets.py: Single-use authorization tickets carrying a verified identity
- providers.py: Provider endpoints and profile mapping for GitHub, Discord and Linux.do
- flow.py: The start, callback and registration steps of the broker
"""
