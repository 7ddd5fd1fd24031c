"""
HTTP surface of the OpenWeather data source.

Serves the query-data and check-health calls as JSON over HTTP, using the
same shapes Grafana's backend contract carries (pluginContext, queries,
per-refId results with data frames as JSON). Grafana's plugin loader speaks
gRPC with Arrow-encoded frames, so it cannot load this process directly: a
gRPC bridge, or a JSON/HTTP data source in front of it, is needed.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI
from pydantic import BaseModel, Field

import settings
from datasource import HEALTH_ERROR, DataResponse, InstanceManager, ref_id_of
from plugin_settings import SettingsError, load_default_settings

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO), format=settings.LOG_FORMAT)


class PluginContext(BaseModel):
    data_source_instance_settings: Optional[Dict[str, Any]] = Field(default=None, alias="dataSourceInstanceSettings")


class QueryDataRequest(BaseModel):
    plugin_context: PluginContext = Field(default_factory=PluginContext, alias="pluginContext")
    # kept raw: each query is validated on its own so one bad query fails alone
    queries: List[Any] = []


class CheckHealthRequest(BaseModel):
    plugin_context: PluginContext = Field(default_factory=PluginContext, alias="pluginContext")


def create_app(instances=None, defaults_loader=load_default_settings):
    """Build the plugin's HTTP surface around an InstanceManager."""
    if instances is None:
        instances = InstanceManager()
    defaults = {}

    def instance_settings(context):
        if context.data_source_instance_settings is not None:
            return context.data_source_instance_settings
        if "settings" not in defaults:
            defaults["settings"] = defaults_loader()
        return defaults["settings"]

    @asynccontextmanager
    async def lifespan(app):
        logging.info(f"PLUGIN   : {settings.PLUGIN_ID} ready.")
        yield
        instances.dispose_all()
        logging.info(f"PLUGIN   : {settings.PLUGIN_ID} stopped.")

    app = FastAPI(title=settings.PLUGIN_ID, lifespan=lifespan)
    app.state.instances = instances

    @app.post("/query")
    def query_data(request: QueryDataRequest):
        try:
            datasource = instances.get(instance_settings(request.plugin_context))
        except SettingsError as e:
            logging.error(f"CONFIG   : Invalid data source settings - {e}")
            error = DataResponse(error=f"invalid data source settings: {e}", status=400)
            return {"results": {ref_id_of(q): error.to_json() for q in request.queries}}

        responses = datasource.query_data(request.queries)
        return {"results": {ref_id: response.to_json() for ref_id, response in responses.items()}}

    @app.post("/health")
    def check_health(request: CheckHealthRequest):
        try:
            datasource = instances.get(instance_settings(request.plugin_context))
        except SettingsError as e:
            logging.error(f"CONFIG   : Invalid data source settings - {e}")
            return {"status": HEALTH_ERROR, "message": f"invalid data source settings: {e}"}
        return datasource.check_health().to_json()

    @app.get("/health")
    def check_default_health():
        return check_health(CheckHealthRequest())

    return app


app = create_app()


def main():
    uvicorn.run(app, host=settings.SERVER_HOST, port=settings.SERVER_PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
