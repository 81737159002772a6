class DispatchError(Exception):
    """Erro visivel ao chamador, com um `kind` legivel por maquina."""

    kind = "dispatch_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"error": self.kind, "message": self.message}


class StoreUnavailableError(DispatchError):
    kind = "store_unavailable"
    status_code = 503


class EnqueueError(StoreUnavailableError):
    kind = "enqueue_failed"


class InvalidPaymentError(DispatchError):
    kind = "invalid_payment"
    status_code = 400


class InvalidTimeRangeError(DispatchError):
    kind = "invalid_time_range"
    status_code = 400
