"""Database exception types."""

class DatabaseError(Exception):
    """Base exception for database failures."""
    pass

class DatabaseSchemaError(DatabaseError):
    """Raised when schema loading or migration fails."""
    pass

class DuplicateRecordError(DatabaseError):
    """Raised when an insert or update violates a unique constraint."""
    def __init__(self, message: str, constraint: str = None):
        self.constraint = constraint
        super().__init__(message)
