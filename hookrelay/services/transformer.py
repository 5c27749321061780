"""
Payload transformer - rewrites the body before it is forwarded.

Steps, in order: template (new base document), field mappings with optional
value transforms, field removal, field addition. Always works on a deep copy
and never raises; a step that fails is logged and skipped, so partial
application is possible.
"""
import base64
import copy
import json
import logging
from typing import Any, Optional

from hookrelay.services.conditions import MISSING, resolve_path, split_path

logger = logging.getLogger(__name__)


def _base64_encode(value: Any) -> str:
    raw = value if isinstance(value, str) else json.dumps(value)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def _base64_decode(value: Any) -> str:
    return base64.b64decode(str(value), validate=True).decode("utf-8")


def _to_number(value: Any) -> Any:
    number = float(value)
    return int(number) if number.is_integer() else number


def _to_string(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


VALUE_TRANSFORMS = {
    "uppercase": lambda v: v.upper() if isinstance(v, str) else v,
    "lowercase": lambda v: v.lower() if isinstance(v, str) else v,
    "trim": lambda v: v.strip() if isinstance(v, str) else v,
    "json-parse": lambda v: json.loads(v) if isinstance(v, str) else v,
    "base64-encode": _base64_encode,
    "base64-decode": _base64_decode,
    "number": _to_number,
    "string": _to_string,
}


def apply_value_transform(value: Any, transform: Optional[str]) -> Any:
    """Apply a named transform. Unknown names and failures return the value unchanged."""
    if not transform:
        return value
    fn = VALUE_TRANSFORMS.get(transform)
    if fn is None:
        logger.debug("Unknown value transform '%s' - leaving value unchanged", transform)
        return value
    try:
        return fn(value)
    except Exception as e:
        logger.debug("Value transform '%s' failed: %s", transform, str(e))
        return value


def set_path(data: Any, path: str, value: Any) -> Any:
    """
    Write value at a dotted path, creating intermediate objects as needed.
    Returns the (possibly replaced) root, since a non-dict root is replaced by a dict.
    """
    segments = split_path(path)
    if not segments:
        return data
    if not isinstance(data, (dict, list)):
        data = {}

    current = data
    for i, segment in enumerate(segments):
        last = i == len(segments) - 1
        if isinstance(current, list):
            try:
                index = int(segment)
            except ValueError:
                logger.debug("Cannot write non-index segment '%s' into a list (path=%s)", segment, path)
                return data
            if index < 0 or index >= len(current):
                logger.debug("List index %d out of range (path=%s)", index, path)
                return data
            if last:
                current[index] = value
            else:
                if not isinstance(current[index], (dict, list)):
                    current[index] = {}
                current = current[index]
            continue

        if last:
            current[segment] = value
        else:
            if not isinstance(current.get(segment), (dict, list)):
                current[segment] = {}
            current = current[segment]
    return data


def remove_path(data: Any, path: str) -> None:
    """Delete the value at a dotted path. No-op if any segment is missing."""
    segments = split_path(path)
    if not segments:
        return
    parent = resolve_path(data, ".".join(segments[:-1])) if len(segments) > 1 else data
    leaf = segments[-1]
    if isinstance(parent, dict):
        parent.pop(leaf, None)
    elif isinstance(parent, list):
        try:
            index = int(leaf)
        except ValueError:
            return
        if 0 <= index < len(parent):
            parent.pop(index)


def transform_payload(config: Optional[dict], body: Any) -> Any:
    """
    Run the transformation pipeline over a deep copy of body.
    Mapping sources are resolved against the original body, so a template
    can be filled in from incoming fields.
    """
    original = copy.deepcopy(body)
    result = copy.deepcopy(body)
    if not config:
        return result

    template = config.get("template")
    if template:
        try:
            result = json.loads(template)
        except (TypeError, ValueError) as e:
            logger.warning("Transformation template is not valid JSON, keeping original body: %s", str(e))

    for mapping in config.get("mappings") or []:
        try:
            source = mapping.get("from")
            target = mapping.get("to")
            if not source or not target:
                continue
            value = resolve_path(original, source)
            if value is MISSING:
                continue
            value = apply_value_transform(copy.deepcopy(value), mapping.get("transform"))
            result = set_path(result, target, value)
        except Exception as e:
            logger.warning("Field mapping %s -> %s failed: %s", mapping.get("from"), mapping.get("to"), str(e))

    for path in config.get("remove_fields") or []:
        try:
            remove_path(result, path)
        except Exception as e:
            logger.warning("Removing field %s failed: %s", path, str(e))

    for field in config.get("add_fields") or []:
        try:
            path = field.get("path")
            if path:
                result = set_path(result, path, copy.deepcopy(field.get("value")))
        except Exception as e:
            logger.warning("Adding field %s failed: %s", field.get("path"), str(e))

    return result
