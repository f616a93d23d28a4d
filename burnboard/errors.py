from typing import Any, Dict, Optional


class LeaderboardError(Exception):
    pass


class StorePermissionError(LeaderboardError):
    """The database directory or file cannot be written."""


def create_error_response(message: str, status_code: Optional[int] = None) -> Dict[str, Any]:
    error_response: Dict[str, Any] = {"error": message}
    if status_code is not None:
        error_response["statusCode"] = status_code
    return error_response
