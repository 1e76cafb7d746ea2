from __future__ import annotations


class PathError(RuntimeError):
    def __init__(self, *, code: str, message: str) -> None:
        super().__init__(message)
        self.code = str(code)
        self.message = str(message)


class InvalidChoiceError(PathError):
    """Rejected transition; the session is left exactly as it was."""

    def __init__(self, choice_id: str, *, reason: str, detail: str | None = None) -> None:
        message = f"choice '{choice_id}' rejected ({reason})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(code="INVALID_CHOICE", message=message)
        self.choice_id = str(choice_id)
        self.reason = str(reason)


class SessionNotActiveError(PathError):
    def __init__(self, session_id: str, *, status: str) -> None:
        super().__init__(code="SESSION_NOT_ACTIVE", message=f"session '{session_id}' is {status}")
        self.session_id = str(session_id)
        self.status = str(status)


class SessionNotFoundError(PathError):
    def __init__(self, session_id: str) -> None:
        super().__init__(code="SESSION_NOT_FOUND", message=f"session '{session_id}' not found")
        self.session_id = str(session_id)


class UnknownStoryError(PathError):
    def __init__(self, story_id: str) -> None:
        super().__init__(code="STORY_NOT_FOUND", message=f"no active choice structure for story '{story_id}'")
        self.story_id = str(story_id)
