"""Configuration exceptions."""

from typing import List, Optional


class ConfigurationError(Exception):
    """Raised when the engine configuration cannot be loaded or validated.

    Carries the individual validation errors and a few suggestions so the
    CLI can print something actionable.
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        suggestions: Optional[List[str]] = None,
    ):
        self.message = message
        self.errors = list(errors or [])
        self.suggestions = list(suggestions or [])
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts = [self.message]

        if self.errors:
            parts.append("\nValidation Errors:")
            parts.extend(f"  {i}. {error}" for i, error in enumerate(self.errors, 1))

        if self.suggestions:
            parts.append("\nSuggestions:")
            parts.extend(f"  - {suggestion}" for suggestion in self.suggestions)

        return "\n".join(parts)
