import logging

from django.core.exceptions import ObjectDoesNotExist
from django.db import DataError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from ledger.exceptions import (
    InsufficientFunds,
    LedgerError,
    RateLimited,
    StoreUnavailable,
)

logger = logging.getLogger(__name__)


def error_response(exc):
    """
    Build the API response for a service failure, or None if `exc` is not
    one of ours and DRF should handle it.
    """
    if isinstance(exc, RateLimited):
        response = Response(
            {"error": str(exc), "code": exc.code, "retry_after": exc.retry_after},
            status=status.HTTP_429_TOO_MANY_REQUESTS,
        )
        if exc.retry_after:
            response["Retry-After"] = str(exc.retry_after)
        return response

    if isinstance(exc, StoreUnavailable):
        return Response(
            {"error": str(exc), "code": exc.code},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    if isinstance(exc, InsufficientFunds):
        return Response(
            {
                "error": str(exc),
                "code": exc.code,
                "balance": exc.balance,
                "required": exc.required,
            },
            status=status.HTTP_400_BAD_REQUEST,
        )

    if isinstance(exc, LedgerError):
        return Response(
            {"error": str(exc), "code": exc.code},
            status=status.HTTP_400_BAD_REQUEST,
        )

    if isinstance(exc, ObjectDoesNotExist):
        return Response(
            {"error": str(exc) or "Not found.", "code": "not_found"},
            status=status.HTTP_404_NOT_FOUND,
        )

    if isinstance(exc, (DataError, OverflowError)):
        return Response(
            {"error": "Value out of range.", "code": "invalid"},
            status=status.HTTP_400_BAD_REQUEST,
        )

    if isinstance(exc, ValueError):
        return Response(
            {"error": str(exc), "code": "invalid"},
            status=status.HTTP_400_BAD_REQUEST,
        )

    return None


class LedgerAPIView(APIView):
    """APIView that turns ledger service failures into JSON error responses."""

    def handle_exception(self, exc):
        response = error_response(exc)
        if response is None:
            return super().handle_exception(exc)

        logger.info(
            "Ledger request refused: %s %s user=%s status=%d error=%s",
            self.request.method,
            self.request.path,
            getattr(self.request.user, "pk", None),
            response.status_code,
            str(exc),
        )
        return response
