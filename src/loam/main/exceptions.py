class LoamException(Exception):
    pass


class InvalidJobError(LoamException):
    """A persisted job is malformed and can only end in a failed state."""

    def __init__(self, job_id, reason: str):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Job {job_id} is invalid: {reason}")


class UpstreamError(LoamException):
    """A throttled upstream API answered with an error or could not be reached."""

    def __init__(self, service: str, status: int | None = None, detail: str | None = None):
        self.service = service
        self.status = status
        self.detail = detail
        message = f"{service} request failed"
        if status is not None:
            message += f" with status {status}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ConfigurationError(LoamException):
    pass
