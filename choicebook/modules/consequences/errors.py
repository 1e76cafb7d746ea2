from __future__ import annotations


class ConsequenceError(RuntimeError):
    def __init__(self, *, code: str, message: str) -> None:
        super().__init__(message)
        self.code = str(code)
        self.message = str(message)


class OrphanedReferenceError(ConsequenceError):
    """A pending consequence names a character or plot thread the structure no longer has."""

    def __init__(self, consequence_id: str, *, kind: str, name: str) -> None:
        super().__init__(
            code="ORPHANED_REFERENCE",
            message=f"consequence '{consequence_id}' references unknown {kind} '{name}'",
        )
        self.consequence_id = str(consequence_id)
        self.kind = str(kind)
        self.name = str(name)
