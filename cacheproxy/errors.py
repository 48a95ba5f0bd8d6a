"""
Faults raised between the proxy's components.

Only the dispatcher and the local request handler turn these into HTTP responses.
"""


class ProxyError(Exception):
    """
    Base class for every fault the proxy raises on purpose.
    """


class ResolutionError(ProxyError):
    """
    The inbound request has no usable path. Answered with 400.
    """


class CacheMiss(ProxyError):
    """
    A cache-only lookup found nothing. Never exposed as an HTTP status.
    """

    def __init__(self, uri: str):
        super().__init__('Not available in cache: {}'.format(uri))
        self.__uri = uri

    @property
    def uri(self) -> str:
        return self.__uri


class FetchError(ProxyError):
    """
    A live request to the origin failed before a response was received.
    """

    def __init__(self, uri: str, cause: BaseException):
        super().__init__('{}: {}'.format(uri, cause))
        self.__uri = uri
        self.__cause = cause

    @property
    def uri(self) -> str:
        return self.__uri

    @property
    def cause(self) -> BaseException:
        return self.__cause


class OfflineError(FetchError):
    """
    The origin could not be reached at all (DNS or connect failure).
    """


class GatewayError(FetchError):
    """
    The origin was reachable but the exchange failed (timeouts, protocol errors).
    """


class RequestBodyError(ProxyError):
    """
    The inbound request body cannot be framed. Answered with `status` before dispatch.
    """

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.__status = status

    @property
    def status(self) -> int:
        return self.__status
