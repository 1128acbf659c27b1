"""
Error taxonomy shared by the stores, the REST client and the transport
"""


class TablesideError(Exception):
    """Base class for every error raised by this package"""


class ValidationError(TablesideError):
    """User-correctable input problem (empty draft, missing session identity)"""


class NetworkError(TablesideError):
    """Request failed or timed out; safe to retry manually"""


class ApiError(NetworkError):
    """Server answered with a non-OK status"""

    def __init__(self, status, message):
        super().__init__(message)
        self.status = status
        self.message = message


class RequestTimeout(NetworkError):
    """No acknowledgement arrived in time; the outcome is unknown"""


class AuthError(TablesideError):
    """Credential rejected (401/403); the cached credential has been cleared"""

    def __init__(self, message="Access denied", status=None):
        super().__init__(message)
        self.status = status


class ReconciliationConflict(TablesideError):
    """Local and server item sets disagreed after a fetch; the server won"""

    def __init__(self, local_items, server_items):
        self.local_items = list(local_items)
        self.server_items = list(server_items)
        super().__init__(
            f"Local state had {len(self.local_items)} line(s), server has {len(self.server_items)}"
        )


class ChannelError(TablesideError):
    """Realtime channel unavailable or request negatively acknowledged"""


class ChannelDegraded(ChannelError):
    """Transport gave up reconnecting; fall back to manual refresh"""


def user_message(error):
    """Translate an error into a (title, message) pair for a dialog"""
    if isinstance(error, ValidationError):
        return "Check your order", str(error)
    if isinstance(error, AuthError):
        return "Access denied", "Your table session has expired. Please join the table again."
    if isinstance(error, RequestTimeout):
        return "No answer", "The restaurant did not answer in time. Please try again."
    if isinstance(error, ApiError):
        return "Error", error.message or "Something went wrong"
    if isinstance(error, NetworkError):
        return "Network error", "Unable to reach the server. Check your internet connection."
    if isinstance(error, ChannelDegraded):
        return "Offline", "Live updates are paused. Pull to refresh."
    if isinstance(error, TablesideError):
        return "Error", str(error) or "Something went wrong"
    return "Error", "Something went wrong"
