from __future__ import annotations


class OriginError(Exception):
    """Base class for request failures that map onto a fixed HTTP response."""

    status_code: int = 500
    message: str = "Internal Server Error"

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.message)
        self.detail = detail or self.message

    @property
    def headers(self) -> dict[str, str]:
        return {}


class BadKeyError(OriginError):
    status_code = 400
    message = "Bad Request"


class MethodNotAllowedError(OriginError):
    status_code = 405
    message = "Method Not Allowed"

    @property
    def headers(self) -> dict[str, str]:
        return {"Allow": "GET, HEAD"}


class ObjectNotFoundError(OriginError):
    status_code = 404
    message = "Not Found"


class PreconditionFailedError(OriginError):
    status_code = 412
    message = "Precondition Failed"


class RangeError(OriginError):
    """A Range header that cannot be served.

    ``size`` is the total object size when it is known, and is echoed back
    as ``Content-Range: bytes */<size>``.
    """

    status_code = 416
    message = "Range Not Satisfiable"

    def __init__(self, detail: str | None = None, size: int | None = None):
        super().__init__(detail)
        self.size = size

    @property
    def headers(self) -> dict[str, str]:
        if self.size is None:
            return {}
        return {"Content-Range": f"bytes */{self.size}"}


class RangeInvalidError(RangeError):
    pass


class RangeTooLargeError(RangeError):
    pass


class RangeNotSatisfiableError(RangeError):
    pass
