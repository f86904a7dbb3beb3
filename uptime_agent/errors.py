from __future__ import annotations


SKIPPED_PREFIX = "skipped:"


class UptimeError(Exception):
    pass


class ConfigValidationError(UptimeError):
    pass


class ConcurrencyConflict(UptimeError):
    def __init__(self, check_key: str) -> None:
        super().__init__(f"CHECK_ALREADY_RUNNING:{check_key}")
        self.check_key = check_key


class CheckTimeout(UptimeError):
    def __init__(self, stage: str = "") -> None:
        self.stage = stage
        super().__init__(self.render())

    def render(self) -> str:
        return f"timeout:{self.stage}" if self.stage else "timeout"


class JoinTimeout(CheckTimeout):
    def render(self) -> str:
        return f"XMPP_JOIN_TIMEOUT:{self.stage}"


class EchoTimeout(CheckTimeout):
    def render(self) -> str:
        return "XMPP_ECHO_TIMEOUT"


class ProtocolJoinError(UptimeError):
    """
    A presence error frame arrived for a room join. Tagged with the join stage
    (e.g. `admin_join_create_room`) so operators can tell which session was denied.
    """

    def __init__(self, stage: str, condition: str, text: str | None = None) -> None:
        self.stage = stage
        self.condition = condition or "unknown"
        self.text = text
        msg = f"XMPP_JOIN_ERROR:{stage}:{self.condition}"
        if text:
            msg = f"{msg}: {text}"
        super().__init__(msg)


class ProtocolSessionError(UptimeError):
    pass


class UpstreamApiError(UptimeError):
    def __init__(self, step: str, status_code: int | None, text: str = "") -> None:
        self.step = step
        self.status_code = status_code
        self.text = (text or "")[:500]
        super().__init__(f"{step} failed: {status_code} {self.text}".rstrip())


class SkippedError(UptimeError):
    """
    Required environment/config is absent. Reported as `skipped: ...` so the
    status rollup treats it as a warning instead of a failure.
    """

    def __init__(self, missing: list[str] | tuple[str, ...] | str) -> None:
        if isinstance(missing, str):
            missing = [missing]
        self.missing = list(missing)
        super().__init__(f"{SKIPPED_PREFIX} missing env: {', '.join(self.missing)}")


def is_skipped_error_text(error_text: str | None) -> bool:
    return str(error_text or "").strip().lower().startswith(SKIPPED_PREFIX)


class UnexpectedRejoin(UptimeError):
    def __init__(self, stage: str) -> None:
        self.stage = stage
        super().__init__(f"UNEXPECTED_REJOIN_AFTER_REMOVAL:{stage}")
