import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import settings


class QueryError(Exception):
    """Query cannot be executed as written."""

    def __init__(self, message, status_code=400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


# Grafana data frame JSON type info per field type
TYPE_INFO = {
    "time": {"frame": "time.Time"},
    "number": {"frame": "float64", "nullable": True},
    "string": {"frame": "string", "nullable": True},
}


@dataclass
class Field:
    name: str
    type: str
    values: List[Any]
    display_name: Optional[str] = None

    def encoded_values(self):
        if self.type == "time":
            return [int(v.timestamp() * 1000) for v in self.values]
        return list(self.values)

    def schema(self):
        schema = {"name": self.name, "type": self.type, "typeInfo": dict(TYPE_INFO[self.type])}
        if self.display_name:
            schema["config"] = {"displayName": self.display_name}
        return schema


@dataclass
class Frame:
    name: str
    ref_id: str = ""
    fields: List[Field] = field(default_factory=list)

    def __len__(self):
        return len(self.fields[0].values) if self.fields else 0

    def to_json(self) -> Dict[str, Any]:
        """Encode as Grafana data frame JSON (schema + columnar values)."""
        return {
            "schema": {
                "name": self.name,
                "refId": self.ref_id,
                "fields": [f.schema() for f in self.fields],
            },
            "data": {"values": [f.encoded_values() for f in self.fields]},
        }


def resolve_parameter(main_parameter, sub_parameter):
    """
    Validate a (mainParameter, subParameter) selector.

    Returns the effective pair. Single-choice main parameters accept an empty
    sub parameter and an empty sub parameter defaults to the first choice.
    """
    main_parameter = main_parameter or settings.DEFAULT_MAIN_PARAMETER
    choices = settings.PARAMETERS.get(main_parameter)
    if choices is None:
        raise QueryError(f"unknown mainParameter '{main_parameter}'")
    if not sub_parameter:
        return main_parameter, choices[0]
    if sub_parameter not in choices:
        raise QueryError(f"unknown subParameter '{sub_parameter}' for mainParameter '{main_parameter}'")
    return main_parameter, sub_parameter


def _invalid_entry(message):
    return QueryError(f"Invalid response from OpenWeather: {message}", 502)


def _group(entry, key):
    """Nested object of a forecast entry; absent means empty."""
    group = entry.get(key)
    if group is None:
        return {}
    if not isinstance(group, dict):
        raise _invalid_entry(f"'{key}' is not an object at dt={entry.get('dt')}")
    return group


def select_value(entry, main_parameter, sub_parameter):
    """Pick one numeric field out of a forecast entry."""
    value = _group(entry, main_parameter).get(sub_parameter)
    if value is None:
        return 0.0 if main_parameter in settings.ZERO_WHEN_ABSENT else None
    try:
        return float(value)
    except (TypeError, ValueError):
        logging.warning(f"QUERY    : Non-numeric {main_parameter}.{sub_parameter} at dt={entry.get('dt')}: {value!r}")
        return None


def entry_time(entry):
    return datetime.fromtimestamp(int(entry["dt"]), tz=timezone.utc)


def entry_description(entry):
    weather = entry.get("weather") or [{}]
    if not isinstance(weather, list) or not isinstance(weather[0], dict):
        raise _invalid_entry(f"'weather' is not a list of objects at dt={entry.get('dt')}")
    return weather[0].get("description", "")


def build_frame(entries, ref_id, main_parameter, sub_parameter, with_description=False):
    """Build the time-series frame for one query from the forecast entries."""
    for entry in entries:
        if not isinstance(entry, dict):
            raise _invalid_entry(f"forecast entry is not an object: {entry!r}")
    try:
        times = [entry_time(entry) for entry in entries]
    except (KeyError, TypeError, ValueError, OverflowError, OSError) as e:
        raise _invalid_entry(f"bad forecast timestamp: {e}")

    values = [select_value(entry, main_parameter, sub_parameter) for entry in entries]

    frame = Frame("response", ref_id=ref_id)
    frame.fields.append(Field("time", "time", times, display_name="Time"))
    frame.fields.append(Field("value", "number", values, display_name=f"{main_parameter} - {sub_parameter}"))
    if with_description:
        descriptions = [entry_description(entry) for entry in entries]
        frame.fields.append(Field("description", "string", descriptions, display_name="Description"))
    return frame
