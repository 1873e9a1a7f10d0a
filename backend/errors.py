class PanoCanvasError(Exception):
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class NotFound(PanoCanvasError):
    status_code = 404


class InvalidArgument(PanoCanvasError):
    status_code = 400


class StorageFailure(PanoCanvasError):
    # Raised by the record store and the blob store; always chained to the original error.
    status_code = 502
