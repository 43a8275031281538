class StorefrontError(Exception):
    """Base class for failures scoped to a single user action."""

    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"error": self.message}


class AuthenticationRequired(StorefrontError):
    status_code = 401
    redirect = "/auth"

    def __init__(self, message="Please sign in to continue"):
        super().__init__(message)

    def to_dict(self):
        return {"error": self.message, "redirect": self.redirect}


class PermissionDenied(StorefrontError):
    status_code = 403

    def __init__(self, message="You don't have admin privileges"):
        super().__init__(message)


class NotFound(StorefrontError):
    status_code = 404


class InvalidRequest(StorefrontError):
    status_code = 400


class CheckoutValidationError(InvalidRequest):
    """The first failing checkout form rule."""


class BackendError(StorefrontError):
    """A backend call (database, auth provider) failed; no retry is attempted."""

    status_code = 502
