"""Exceptions raised by Searchmatic services."""


class SearchmaticError(Exception):
    """Base class for application errors shown to the user."""


class AuthenticationError(SearchmaticError):
    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class AuthorizationError(SearchmaticError):
    """The user is signed in but does not own the resource."""


class NotFoundError(SearchmaticError):
    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class ValidationError(SearchmaticError):
    """Invalid input to a service call."""


class ProtocolLockedError(SearchmaticError):
    """Raised when modifying a locked protocol."""


class MigrationError(SearchmaticError):
    pass


class PubMedError(SearchmaticError):
    """E-utilities request failed after retries."""


class JobError(SearchmaticError):
    pass
