class CampaignEngineError(Exception):
    """Base class for errors raised by the campaign engine.

    ``code`` is the machine-readable identifier surfaced in API error envelopes
    and per-item batch results; ``status_code`` is the HTTP status the API layer
    maps the error to.
    """

    code = "campaign_engine_error"
    status_code = 500

    def __init__(self, message: str, *, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidRule(CampaignEngineError):
    code = "invalid_rule"
    status_code = 400

    def __init__(self, message: str, *, path: str = "$"):
        super().__init__(f"{message} at {path}", details={"path": path})
        self.path = path


class SegmentNotFound(CampaignEngineError):
    code = "segment_not_found"
    status_code = 404

    def __init__(self, segment_id: str):
        super().__init__(f"Segment '{segment_id}' not found", details={"segment_id": segment_id})
        self.segment_id = segment_id


class CampaignNotFound(CampaignEngineError):
    code = "campaign_not_found"
    status_code = 404

    def __init__(self, campaign_id: str):
        super().__init__(f"Campaign '{campaign_id}' not found", details={"campaign_id": campaign_id})
        self.campaign_id = campaign_id


class QueryFailed(CampaignEngineError):
    code = "query_failed"
    status_code = 503


class VendorCallFailed(CampaignEngineError):
    """Outbound vendor call failed; always absorbed into a FAILED log entry."""

    code = "vendor_call_failed"
    status_code = 502


class UnknownReceipt(CampaignEngineError):
    code = "unknown_receipt"
    status_code = 404

    def __init__(self, correlation_id: str):
        super().__init__(
            f"No communication log entry for correlation id '{correlation_id}'",
            details={"correlation_id": correlation_id},
        )
        self.correlation_id = correlation_id


class DoubleDispatchRejected(CampaignEngineError):
    """Another trigger already claimed the campaign. Callers skip it."""

    code = "double_dispatch_rejected"
    status_code = 409

    def __init__(self, campaign_id: str, *, expected_status: str):
        super().__init__(
            f"Campaign '{campaign_id}' is no longer {expected_status}; dispatch skipped",
            details={"campaign_id": campaign_id, "expected_status": expected_status},
        )
        self.campaign_id = campaign_id


class IllegalTransition(CampaignEngineError):
    code = "illegal_transition"
    status_code = 409

    def __init__(self, campaign_id: str, *, from_status: str, to_status: str):
        super().__init__(
            f"Campaign '{campaign_id}' cannot move from {from_status} to {to_status}",
            details={"campaign_id": campaign_id, "from_status": from_status, "to_status": to_status},
        )
