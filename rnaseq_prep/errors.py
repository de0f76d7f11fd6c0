"""
Exceptions raised by the preprocessing stages.

Every error records the stage that raised it and, where relevant, the
column involved, so that a failed run can be traced back without a traceback.
"""

from typing import Optional


class PreprocessingError(Exception):
    """Base class for all preprocessing failures."""

    def __init__(self, message: str, stage: Optional[str] = None, field: Optional[str] = None):
        self.stage = stage
        self.field = field
        self.detail = message
        super().__init__(self._format(message))

    def _format(self, message: str) -> str:
        context = []
        if self.stage:
            context.append(f"stage={self.stage}")
        if self.field:
            context.append(f"field={self.field}")
        if context:
            return f"{message} ({', '.join(context)})"
        return message


class MissingColumn(PreprocessingError):
    """A required column is absent from the table."""


class MissingSymbolColumn(MissingColumn):
    pass


class MissingCategoryColumn(MissingColumn):
    pass


class MissingSampleColumns(MissingColumn):
    pass


class IncompletePredicate(PreprocessingError, ValueError):
    """Only one of min_count / min_samples was supplied."""


class UnknownMethod(PreprocessingError, ValueError):
    """Unsupported duplicate merge policy."""


class LookupUnavailable(PreprocessingError):
    """The annotation collaborator could not be reached or lacks the dataset."""


class InvalidTable(PreprocessingError, ValueError):
    """The table violates a structural invariant (ids, samples, counts)."""
