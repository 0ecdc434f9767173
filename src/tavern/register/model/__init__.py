"""
Database Models

This package defines the durable data of the service using SQLAlchemy ORM.
Only identity bindings are persisted; OAuth state tokens and authorization
tickets live in short-lived stores and are never written here.

Key Models:
- base.py: Base SQLAlchemy model with common type definitions
- bindings.py: IdentityBinding, the mapping between a third-party identity
  and a handle on the remote account service

The bindings table carries two independent unique constraints, one on
(provider, provider_id) and one on remote_handle. The storage layer enforces
both, so two concurrent registrations can never claim the same identity or the
same handle even when both pass the application-level checks.
"""
