"""Exceptions raised by the field generation pipeline."""


class FieldGenError(Exception):
    pass


class MalformedSpecError(FieldGenError, ValueError):
    """Grid spec file is unreadable, short, or has a bad value."""

    def __init__(self, message, field=None, line_no=None):
        self.field = field
        self.line_no = line_no
        where = []
        if field is not None:
            where.append(f"field '{field}'")
        if line_no is not None:
            where.append(f"line {line_no}")
        if where:
            message = f"{message} ({', '.join(where)})"
        super().__init__(message)


class GeometryImportError(FieldGenError):
    """Geometry description could not be loaded. Fatal to the whole run."""


class CacheNotReadyError(FieldGenError):
    """An electrode job ran before the solve cache was built."""


class DegenerateAxisError(FieldGenError, ValueError):
    """Axis has several samples but no extent to spread them over."""


class InvalidJobRangeError(FieldGenError, ValueError):
    pass
