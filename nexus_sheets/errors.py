"""Formula error types. `code` is the string shown in the cell."""


ERROR_MARKER = "#ERROR!"


class FormulaError(Exception):
    """Base for all formula errors. `code` is the cell display string."""
    code: str = ERROR_MARKER

    def __init__(self, message: str = "", code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code

class FormulaSyntaxError(FormulaError):
    code = ERROR_MARKER

class DivisionByZeroError(FormulaError):
    code = ERROR_MARKER

class RangeMismatchError(FormulaError):
    code = ERROR_MARKER

class LookupNotFoundError(FormulaError):
    code = "#N/A"

class InvalidRefError(FormulaError):
    code = "#REF!"
