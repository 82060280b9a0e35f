import logging

from ledger.utils import client_ip

logger = logging.getLogger(__name__)


class ClientAddressMiddleware:
    """
    Resolves the client network address once per request and logs the
    request/response pair.

    The address is stored on `request.client_ip` for the abuse guard.
    Bodies are not logged: they can carry payment details.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request.client_ip = client_ip(request)

        logger.info(
            "API Request: %s %s ip=%s",
            request.method,
            request.get_full_path(),
            request.client_ip,
        )

        response = self.get_response(request)

        logger.info(
            "API Response: %s %s ip=%s status=%d",
            request.method,
            request.get_full_path(),
            request.client_ip,
            response.status_code,
        )
        return response
