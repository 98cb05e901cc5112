from __future__ import annotations


class RatebookImportError(RuntimeError):
    pass


class StructuralImportError(RatebookImportError):
    """The file could not be read, or holds no data rows."""


class MissingRequiredFieldsError(RatebookImportError):
    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(f"Missing required field mappings: {', '.join(self.missing)}")


class DuplicateImportError(RatebookImportError):
    def __init__(self, message: str, *, existing_import_id: str | None = None):
        self.existing_import_id = existing_import_id
        super().__init__(message)


class DbNotConfiguredError(RuntimeError):
    pass
