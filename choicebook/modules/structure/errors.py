from __future__ import annotations


class StructureError(ValueError):
    """Raised at build time when a choice structure cannot be served to readers."""

    def __init__(self, *, code: str, message: str, location: str | None = None) -> None:
        super().__init__(message)
        self.code = str(code)
        self.message = str(message)
        self.location = str(location) if location is not None else None


class UnknownChapterError(StructureError):
    def __init__(self, chapter_id: str, *, location: str | None = None, detail: str | None = None) -> None:
        message = f"unknown chapter '{chapter_id}'"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(code="UNKNOWN_CHAPTER", message=message, location=location)
        self.chapter_id = str(chapter_id)


class DanglingChoiceError(StructureError):
    def __init__(self, choice_id: str, *, target: str, location: str | None = None, detail: str | None = None) -> None:
        message = f"choice '{choice_id}' references '{target}' which does not resolve"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(code="DANGLING_CHOICE", message=message, location=location)
        self.choice_id = str(choice_id)
        self.target = str(target)


class DuplicateIdError(StructureError):
    def __init__(self, kind: str, item_id: str) -> None:
        super().__init__(code="DUPLICATE_ID", message=f"duplicate {kind} id '{item_id}'", location=f"{kind}[{item_id}]")
        self.kind = str(kind)
        self.item_id = str(item_id)
