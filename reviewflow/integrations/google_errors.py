"""
Google Business Profile error classification

Every failure coming back from Google (HTTP status, transport error or OAuth
error) is mapped onto one GoogleErrorType so callers never see raw provider
errors.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests


class GoogleErrorType(str, Enum):
    CONNECTION_EXPIRED = "CONNECTION_EXPIRED"
    TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    API_RATE_LIMIT = "API_RATE_LIMIT"
    REVIEW_NOT_FOUND = "REVIEW_NOT_FOUND"
    INVALID_REQUEST = "INVALID_REQUEST"
    API_UNAVAILABLE = "API_UNAVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    CREDENTIALS_MISSING = "CREDENTIALS_MISSING"
    CREDENTIALS_UNREADABLE = "CREDENTIALS_UNREADABLE"
    CREDENTIALS_LOAD_FAILED = "CREDENTIALS_LOAD_FAILED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass(frozen=True)
class GoogleErrorInfo:
    title: str
    message: str
    retryable: bool


GOOGLE_ERRORS = {
    GoogleErrorType.CONNECTION_EXPIRED: GoogleErrorInfo(
        title="Connection Expired",
        message="Your Google Business Profile connection has expired and needs to be renewed.",
        retryable=False,
    ),
    GoogleErrorType.TOKEN_REFRESH_FAILED: GoogleErrorInfo(
        title="Connection Refresh Failed",
        message="Unable to refresh your Google Business Profile connection.",
        retryable=False,
    ),
    GoogleErrorType.INSUFFICIENT_PERMISSIONS: GoogleErrorInfo(
        title="Insufficient Permissions",
        message="You need owner or manager access to this Google Business Profile to manage reviews.",
        retryable=False,
    ),
    GoogleErrorType.API_RATE_LIMIT: GoogleErrorInfo(
        title="Rate Limit Exceeded",
        message="Too many requests to Google's API. Please wait a few minutes before trying again.",
        retryable=True,
    ),
    GoogleErrorType.REVIEW_NOT_FOUND: GoogleErrorInfo(
        title="Review Not Found",
        message="The review could not be found on Google. It may have been removed by the customer.",
        retryable=False,
    ),
    GoogleErrorType.INVALID_REQUEST: GoogleErrorInfo(
        title="Reply Rejected",
        message="Google rejected the reply. Check its length and content and try again.",
        retryable=False,
    ),
    GoogleErrorType.API_UNAVAILABLE: GoogleErrorInfo(
        title="Service Temporarily Unavailable",
        message="Google's Business Profile API is temporarily unavailable.",
        retryable=True,
    ),
    GoogleErrorType.NETWORK_ERROR: GoogleErrorInfo(
        title="Network Connection Error",
        message="Unable to connect to Google's services.",
        retryable=True,
    ),
    GoogleErrorType.TIMEOUT: GoogleErrorInfo(
        title="Request Timed Out",
        message="Google did not answer in time. The reply may or may not have been posted.",
        retryable=False,
    ),
    GoogleErrorType.CREDENTIALS_MISSING: GoogleErrorInfo(
        title="Not Connected",
        message="Google Business Profile not connected. Please connect in Settings.",
        retryable=False,
    ),
    GoogleErrorType.CREDENTIALS_UNREADABLE: GoogleErrorInfo(
        title="Credentials Unreadable",
        message="Stored Google credentials could not be decrypted. Please reconnect in Settings.",
        retryable=False,
    ),
    GoogleErrorType.CREDENTIALS_LOAD_FAILED: GoogleErrorInfo(
        title="Credentials Unavailable",
        message="Stored Google credentials could not be loaded. Nothing was sent; please try again.",
        retryable=True,
    ),
    GoogleErrorType.UNKNOWN_ERROR: GoogleErrorInfo(
        title="Unexpected Error",
        message="An unexpected error occurred while posting to Google Business Profile.",
        retryable=False,
    ),
}


def get_error_info(error_type: GoogleErrorType) -> GoogleErrorInfo:
    return GOOGLE_ERRORS.get(error_type, GOOGLE_ERRORS[GoogleErrorType.UNKNOWN_ERROR])


def classify_status(status_code: Optional[int]) -> GoogleErrorType:
    """Map an HTTP status returned by Google to an error type"""
    if status_code is None:
        return GoogleErrorType.UNKNOWN_ERROR
    if status_code == 401:
        return GoogleErrorType.CONNECTION_EXPIRED
    if status_code == 403:
        return GoogleErrorType.INSUFFICIENT_PERMISSIONS
    if status_code == 404:
        return GoogleErrorType.REVIEW_NOT_FOUND
    if status_code == 429:
        return GoogleErrorType.API_RATE_LIMIT
    if status_code >= 500:
        return GoogleErrorType.API_UNAVAILABLE
    if status_code >= 400:
        return GoogleErrorType.INVALID_REQUEST
    return GoogleErrorType.UNKNOWN_ERROR


def classify_exception(exc: BaseException) -> GoogleErrorType:
    """
    Map a requests transport error to an error type

    A read timeout means the request reached Google, so the write may have
    happened; it is reported as TIMEOUT. A connect timeout or refused
    connection never reached Google and is a plain NETWORK_ERROR.
    """
    if isinstance(exc, requests.exceptions.ConnectTimeout):
        return GoogleErrorType.NETWORK_ERROR
    if isinstance(exc, requests.exceptions.Timeout):
        return GoogleErrorType.TIMEOUT
    if isinstance(exc, requests.exceptions.ConnectionError):
        return GoogleErrorType.NETWORK_ERROR
    return GoogleErrorType.UNKNOWN_ERROR


def is_outcome_unknown(error_type: GoogleErrorType) -> bool:
    """Whether Google may have applied the write despite the error"""
    return error_type == GoogleErrorType.TIMEOUT
