"""OpenAPI customization for the API key scheme and tag metadata.

Kept apart from the app factory so documentation concerns stay decoupled from
app wiring.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

# Paths served without an API key.
PUBLIC_PATHS = frozenset({"/health"})


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to add security and tags.

    - Declares the ``X-API-Key`` header scheme and requires it globally
    - Exempts ``PUBLIC_PATHS`` by setting ``security: []``
    - Documents rate limit headers on the 429 responses
    """

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        schema = original_openapi()

        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes.setdefault(
            "ApiKeyAuth",
            {
                "type": "apiKey",
                "in": "header",
                "name": "X-API-Key",
                "description": "Provide your API key via the X-API-Key header.",
            },
        )
        schema.setdefault("security", [{"ApiKeyAuth": []}])

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        for tag in (
            {
                "name": "Rate Limit",
                "description": "Violation journal, store health and per-identity usage.",
            },
            {"name": "Health", "description": "Liveness check."},
        ):
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        for path, methods in schema.get("paths", {}).items():
            for method_obj in methods.values():
                if not isinstance(method_obj, dict):
                    continue
                if path in PUBLIC_PATHS:
                    method_obj["security"] = []
                    continue
                method_obj.setdefault("responses", {}).setdefault(
                    "429",
                    {
                        "description": "Rate limit exceeded",
                        "headers": {
                            "Retry-After": {"schema": {"type": "integer"}},
                            "X-RateLimit-Limit": {"schema": {"type": "string"}},
                            "X-RateLimit-Remaining": {"schema": {"type": "string"}},
                            "X-RateLimit-Reset": {"schema": {"type": "integer"}},
                        },
                    },
                )

        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
