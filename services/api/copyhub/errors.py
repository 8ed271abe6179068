from fastapi import status


class CopyHubError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationFailure(CopyHubError):
    status_code = status.HTTP_401_UNAUTHORIZED


class AccountDisabled(CopyHubError):
    """Token is valid but the account or its owner may not trade."""
    status_code = status.HTTP_403_FORBIDDEN


class ValidationFailure(CopyHubError):
    status_code = status.HTTP_400_BAD_REQUEST


class OwnershipViolation(CopyHubError):
    status_code = status.HTTP_403_FORBIDDEN


class FeatureNotEnabled(CopyHubError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(CopyHubError):
    status_code = status.HTTP_404_NOT_FOUND


class InvalidState(CopyHubError):
    status_code = status.HTTP_409_CONFLICT
