"""Dependencies for API endpoints."""

from fastapi import Request

from vmhost.services.registry import VMRegistry


def get_registry(request: Request) -> VMRegistry:
    """Get the registry opened by the application lifespan."""
    return request.app.state.registry
