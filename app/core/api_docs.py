from app.schemas.common import ErrorOut

# status -> (code, message, example path) shown in the OpenAPI error examples.
_ERROR_EXAMPLES: dict[int, tuple[str, str, str]] = {
    400: ("invalid_rule", "Unknown operator '~' at $.children[0]", "/segments"),
    401: ("unauthorized", "X-User-Id header is required", "/campaigns"),
    404: ("not_found", "Campaign not found", "/campaigns/cmp_123"),
    409: ("illegal_transition", "Campaign 'cmp_123' cannot move from COMPLETED to RUNNING", "/campaigns/cmp_123/launch"),
    422: ("validation_error", "Validation failed", "/campaigns"),
    500: ("internal_error", "Internal server error", "/campaigns"),
    502: ("bad_gateway", "Text generation failed", "/segments/from-text"),
    503: ("query_failed", "Storage query failed", "/segments/preview"),
}


def error_responses(*status_codes: int) -> dict[int, dict]:
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        code, message, path = _ERROR_EXAMPLES.get(status_code, ("http_error", "HTTP error", "/"))
        responses[status_code] = {
            "model": ErrorOut,
            "description": message,
            "content": {
                "application/json": {
                    "example": {
                        "error": {
                            "code": code,
                            "message": message,
                            "request_id": "request-id",
                            "path": path,
                            "details": None,
                        }
                    }
                }
            },
        }
    return responses
