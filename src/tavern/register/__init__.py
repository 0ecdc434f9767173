"""
Tavern Register - OAuth-gated account registration

This package implements a registration broker for a self-hosted account
service that only exposes administrator-only account creation. Users prove a
third-party identity (GitHub, Discord or Linux.do) through OAuth, and the
service creates exactly one remote account per identity on their behalf.

Key Components:
- app: Web application layer with request handlers, configuration and tasks
- oauth: State tokens, authorization tickets, providers and the broker flow
- remote: Administrator session exchange and account provisioning against
  the remote account service
- model: Database models for identity bindings and the health gauge

Architecture Overview:
1. OAuth:
   - A single-use state token protects the provider redirect
   - The provider callback yields an identity claim held in a short lived,
     single-use authorization ticket

2. Provisioning:
   - Every account creation logs in as the administrator with a fresh
     session credential and anti-forgery token
   - No session state is shared between registrations

3. Binding:
   - Each identity is bound to at most one remote handle, and each handle to
     at most one identity, enforced by unique constraints
"""
