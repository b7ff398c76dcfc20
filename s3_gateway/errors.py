"""Gateway error taxonomy.

Backends raise these at their boundary; the application exception handler in
``main`` renders them as short plain-text S3-style responses.
"""


class GatewayError(Exception):
    """Base error carrying the HTTP status and a short S3-style code."""

    status_code = 500
    code = "InternalError"
    default_message = "An internal error occurred"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AccessDenied(GatewayError):
    """Bucket is not on the allow-list."""

    status_code = 403
    code = "AccessDenied"
    default_message = "Access denied to this bucket"


class InvalidSignature(GatewayError):
    """Missing or mismatching AWS Signature V4."""

    status_code = 403
    code = "SignatureDoesNotMatch"
    default_message = "Invalid Signature"


class InvalidRequest(GatewayError):
    """Request is missing something the operation requires."""

    status_code = 400
    code = "InvalidRequest"
    default_message = "Object key required"


class NotFound(GatewayError):
    """Object (or one of its parent folders) does not exist."""

    status_code = 404
    code = "NoSuchKey"
    default_message = "NoSuchKey"


class UpstreamFailure(GatewayError):
    """Backend answered with a non-success status or could not be reached."""

    status_code = 500
    code = "UpstreamFailure"
    default_message = "Upstream request failed"
