"""FastAPI application and routes.

This module provides the REST API for the family calendar's external
calendar integration.

## API Structure

- /api/external-calendars - Connect, list, sync and disconnect calendars
- /health - Liveness check

## Authentication

Endpoints require the session cookie issued at sign-in, except the OAuth
callback, which is authenticated by its signed state parameter.
"""

from family_calendar.api.app import create_app

__all__ = ["create_app"]
