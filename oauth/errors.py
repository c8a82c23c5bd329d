"""OAuth error taxonomy.

Every failure the proxy reports to a caller is one of these. Endpoints turn
them into ``{"error": ..., "error_description": ...}`` JSON bodies.
"""


class OAuthError(Exception):
    """Base class for errors reported with an OAuth error code."""

    error = "server_error"
    status_code = 500

    def __init__(self, description: str = None, status_code: int = None):
        super().__init__(description or self.error)
        self.description = description
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidRequest(OAuthError):
    error = "invalid_request"
    status_code = 400


class InvalidClient(OAuthError):
    error = "invalid_client"
    status_code = 401


class InvalidGrant(OAuthError):
    error = "invalid_grant"
    status_code = 400


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"
    status_code = 400


class UnsupportedResponseType(OAuthError):
    error = "unsupported_response_type"
    status_code = 400


class InvalidClientMetadata(OAuthError):
    error = "invalid_client_metadata"
    status_code = 400


class ServerError(OAuthError):
    error = "server_error"
    status_code = 500
