import jsonschema

from logbridge.errors import RecordValidationError

# Only the required fields are enforced. Unknown types/levels are kept so that
# logs written by newer versions still load.
LOG_ENTRY_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["timestamp", "type", "level", "source"],
    "properties": {
        "timestamp": {"type": "string", "minLength": 1},
        "type": {"type": "string", "minLength": 1},
        "level": {"type": "string", "minLength": 1},
        "source": {"type": "string", "minLength": 1},
        "context": {"type": ["object", "null"]},
    },
}


def describe_error(error: jsonschema.ValidationError) -> str:
    where = ".".join(str(p) for p in error.path)
    return f"{where}: {error.message}" if where else error.message


class LogEntryValidator:
    """Checks decoded log records against the LogEntry schema."""

    def __init__(self, schema=None):
        self._validator = jsonschema.Draft202012Validator(schema or LOG_ENTRY_SCHEMA)

    def check(self, record) -> None:
        """Raise RecordValidationError listing every schema violation."""
        errors = sorted(self._validator.iter_errors(record), key=lambda e: list(e.path))
        if errors:
            raise RecordValidationError("; ".join(describe_error(e) for e in errors))
