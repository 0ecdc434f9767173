"""
Tavern Register Application Layer

This package implements the web application layer for the registration
service using the aiohttp framework.

Key Components:
- cli.py: Entry point for running the application
- server.py: Web server configuration, middleware and resource lifecycle
- config.py: Configuration management using Pydantic settings
- metrics.py: Metrics abstraction over Telegraf/StatsD
- handlers/: Request handlers for the OAuth, registration and internal endpoints
- tasks.py: Background sweep and health monitoring tasks

The application uses two middleware layers:
- Statsd middleware for metrics collection
- Error middleware that maps registration errors to JSON responses and
  reports unexpected ones to Sentry
"""
