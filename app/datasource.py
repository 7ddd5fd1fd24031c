import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

import settings
from forecast_log import write_forecast_log
from frames import Frame, QueryError, build_frame, resolve_parameter
from openweather_manager import OpenWeather, OpenWeatherError
from plugin_settings import PluginSettings, load_plugin_settings

HEALTH_OK = "OK"
HEALTH_ERROR = "ERROR"


class QueryModel(BaseModel):
    """Query fields sent by the query editor. Unknown keys are ignored."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    ref_id: str = Field(default="A", alias="refId")
    city: str = ""
    main_parameter: str = Field(default=settings.DEFAULT_MAIN_PARAMETER, alias="mainParameter")
    sub_parameter: str = Field(default="", alias="subParameter")
    units: Literal[settings.UNITS] = settings.DEFAULT_UNITS
    with_description: bool = Field(default=False, alias="withDescription")


@dataclass
class DataResponse:
    frames: List[Frame] = field(default_factory=list)
    error: Optional[str] = None
    status: int = 200

    def to_json(self) -> Dict[str, Any]:
        if self.error is not None:
            return {"status": self.status, "error": self.error}
        return {"status": self.status, "frames": [f.to_json() for f in self.frames]}


@dataclass
class HealthResult:
    status: str
    message: str

    def to_json(self):
        return {"status": self.status, "message": self.message}


def ref_id_of(raw):
    """Response key for a query; anything but a non-empty string falls back to 'A'."""
    if isinstance(raw, dict) and isinstance(raw.get("refId"), str):
        return raw["refId"] or "A"
    return "A"


def decode_query(raw):
    """
    Turn one inbound query into a QueryModel.

    The model is either inline (frontend shape) or under 'json' (raw host
    payload), as JSON text or as an embedded object.
    """
    if not isinstance(raw, dict):
        raise QueryError(f"json unmarshal: expected an object, got {type(raw).__name__}")

    payload = raw
    if "json" in raw and raw["json"] is not None:
        payload = raw["json"]
        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except ValueError as e:
                raise QueryError(f"json unmarshal: {e}")
        if not isinstance(payload, dict):
            raise QueryError(f"json unmarshal: expected an object, got {type(payload).__name__}")
        payload = dict(payload)
        payload.setdefault("refId", ref_id_of(raw))

    try:
        return QueryModel.model_validate(payload)
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise QueryError(f"invalid query: {problems}")


class Datasource:
    """One configured OpenWeather data source instance."""

    def __init__(self, plugin_settings: PluginSettings, client=None):
        self.settings = plugin_settings
        self.client = client or OpenWeather(
            plugin_settings.path,
            plugin_settings.api_key,
            timeout=plugin_settings.timeout,
        )

    @classmethod
    def from_instance_settings(cls, instance_settings):
        return cls(load_plugin_settings(instance_settings))

    def query_data(self, queries) -> Dict[str, DataResponse]:
        """Run each query independently; the result is keyed by refId."""
        responses = {}
        for raw in queries:
            responses[ref_id_of(raw)] = self.query(raw)
        return responses

    def query(self, raw) -> DataResponse:
        start = time.time()
        try:
            qm = decode_query(raw)
        except QueryError as e:
            logging.warning(f"QUERY    : Rejected [{ref_id_of(raw)}] - {e.message}")
            return DataResponse(error=e.message, status=e.status_code)

        if not qm.city:
            return DataResponse()

        try:
            main_parameter, sub_parameter = resolve_parameter(qm.main_parameter, qm.sub_parameter)
            entries = self.client.fetch_forecast(qm.city, qm.units)
            frame = build_frame(entries, qm.ref_id, main_parameter, sub_parameter, qm.with_description)
        except (QueryError, OpenWeatherError) as e:
            logging.warning(f"QUERY    : Failed [{qm.ref_id}] {qm.city} - {e.message}")
            return DataResponse(error=e.message, status=e.status_code)

        if self.settings.forecast_log_dir:
            write_forecast_log(self.settings.forecast_log_dir, qm.city, frame)

        duration = time.time() - start
        logging.info(
            f"QUERY    : [{qm.ref_id}] {qm.city} {main_parameter}.{sub_parameter} ({qm.units}) "
            f"- {len(frame)} points in {duration * 1000:.1f}ms"
        )
        return DataResponse(frames=[frame])

    def check_health(self) -> HealthResult:
        """API key must be set; with a probe city configured the live API is queried too."""
        if not self.settings.api_key:
            logging.warning("HEALTH   : API key is missing")
            return HealthResult(HEALTH_ERROR, "API key is missing")

        city = self.settings.health_check_city
        if not city:
            return HealthResult(HEALTH_OK, "Data source is working")

        try:
            self.client.fetch_forecast(city)
        except OpenWeatherError as e:
            logging.warning(f"HEALTH   : Probe for {city} failed - {e.message}")
            return HealthResult(HEALTH_ERROR, e.message)

        return HealthResult(HEALTH_OK, "Data source is working")

    def dispose(self):
        self.client.close()


class InstanceManager:
    """
    Caches one Datasource per instance uid. A changed 'updated' stamp means the
    settings were edited: the old instance is disposed and a new one created.
    """

    def __init__(self, factory=Datasource.from_instance_settings):
        self.factory = factory
        self._instances = {}
        self._lock = threading.Lock()

    def get(self, instance_settings) -> Datasource:
        uid = str(instance_settings.get("uid") or instance_settings.get("id") or "default")
        updated = instance_settings.get("updated")

        with self._lock:
            cached = self._instances.get(uid)
            if cached is not None and cached[0] == updated:
                return cached[1]

            datasource = self.factory(instance_settings)
            self._instances[uid] = (updated, datasource)

        if cached is not None:
            logging.info(f"CONFIG   : Settings for data source '{uid}' changed, disposing old instance.")
            cached[1].dispose()
        return datasource

    def dispose_all(self):
        with self._lock:
            instances, self._instances = self._instances, {}
        for _, datasource in instances.values():
            datasource.dispose()

    def __len__(self):
        return len(self._instances)
