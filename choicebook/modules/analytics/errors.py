from __future__ import annotations


class AnalysisCancelledError(RuntimeError):
    def __init__(self, *, stage: str, processed: int = 0) -> None:
        message = f"{stage} run cancelled after {int(processed)} item(s); partial results discarded"
        super().__init__(message)
        self.code = "ANALYSIS_CANCELLED"
        self.message = message
        self.stage = str(stage)
        self.processed = int(processed)
