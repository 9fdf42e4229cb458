from pathlib import Path
import json
import jsonschema

REPO_ROOT = Path(__file__).resolve().parents[2]
SCHEMA_DIR = REPO_ROOT / "config" / "schemas"


def _load_schema(name: str) -> dict:
    schema_path = SCHEMA_DIR / f"{name}.schema.json"
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema not found: {schema_path}")
    return json.loads(schema_path.read_text(encoding="utf-8"))


def _error_path(err: jsonschema.exceptions.ValidationError) -> str:
    parts = [str(p) for p in err.absolute_path]
    # a missing key is reported on the parent object; point at the key itself
    if err.validator == "required" and isinstance(err.instance, dict):
        missing = [k for k in err.validator_value if k not in err.instance and repr(k) in err.message]
        if missing:
            parts.append(missing[0])
    return ".".join(parts) or "$"


def collect_errors(data: dict, name: str) -> dict:
    """All violations as {dotted.path: [messages]}."""
    schema = _load_schema(name)
    validator = jsonschema.Draft7Validator(schema)
    errors = {}
    for err in sorted(validator.iter_errors(data), key=lambda e: list(map(str, e.absolute_path))):
        errors.setdefault(_error_path(err), []).append(err.message)
    return errors


def validate_with_schema(data: dict, name: str):
    try:
        schema = _load_schema(name)
    except Exception as e:
        return False, str(e)

    try:
        jsonschema.validate(instance=data, schema=schema)
        return True, "Valid"
    except jsonschema.exceptions.ValidationError as e:
        return False, e.message
