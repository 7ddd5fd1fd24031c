import json
import os
import tempfile
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock

import requests
from fastapi.testclient import TestClient

from datasource import HEALTH_ERROR, HEALTH_OK, Datasource, InstanceManager, decode_query
from forecast_log import log_file_path, write_forecast_log
from frames import QueryError, build_frame, resolve_parameter, select_value
from main import create_app
from openweather_manager import OpenWeather, OpenWeatherError
from plugin_settings import PluginSettings, SettingsError, load_default_settings, load_plugin_settings
import settings

FORECAST_URL = "https://api.openweathermap.org/data/2.5/forecast"

FORECAST = {
    "cod": "200",
    "list": [
        {
            "dt": 1700000000,
            "main": {"temp": 11.5, "feels_like": 10.2, "temp_min": 9.8, "temp_max": 12.1,
                     "pressure": 1012, "sea_level": 1012, "grnd_level": 1001, "humidity": 81},
            "weather": [{"id": 500, "main": "Rain", "description": "light rain"}],
            "clouds": {"all": 75},
            "wind": {"speed": 4.1, "deg": 230, "gust": 7.9},
            "rain": {"3h": 0.42},
        },
        {
            "dt": 1700010800,
            "main": {"temp": 9.0, "feels_like": 7.1, "temp_min": 8.7, "temp_max": 9.0,
                     "pressure": 1014, "sea_level": 1014, "grnd_level": 1003, "humidity": 77},
            "weather": [{"id": 803, "main": "Clouds", "description": "broken clouds"}],
            "clouds": {"all": 60},
            "wind": {"speed": 3.3, "deg": 250},
        },
    ],
}


def _response(status_code=200, payload=None, url=FORECAST_URL + "?q=Marburg&appid=secret&units=metric"):
    response = MagicMock()
    response.status_code = status_code
    response.url = url
    response.json.return_value = FORECAST if payload is None else payload
    return response


def _datasource(session, **overrides):
    plugin_settings = PluginSettings(api_key="secret", **overrides)
    client = OpenWeather(plugin_settings.path, plugin_settings.api_key, session=session)
    return Datasource(plugin_settings, client=client)


class TestParameterSelection(unittest.TestCase):

    def test_resolve_parameter_defaults_sub_parameter(self):
        self.assertEqual(resolve_parameter("main", ""), ("main", "temp"))
        self.assertEqual(resolve_parameter("clouds", ""), ("clouds", "all"))
        self.assertEqual(resolve_parameter("rain", None), ("rain", "3h"))
        self.assertEqual(resolve_parameter("", ""), ("main", "temp"))

    def test_resolve_parameter_rejects_unknown_selectors(self):
        with self.assertRaises(QueryError) as ctx:
            resolve_parameter("snow", "3h")
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIn("snow", ctx.exception.message)

        with self.assertRaises(QueryError) as ctx:
            resolve_parameter("wind", "temp")
        self.assertIn("temp", ctx.exception.message)

    def test_select_value(self):
        first, second = FORECAST["list"]
        self.assertEqual(select_value(first, "main", "humidity"), 81.0)
        self.assertEqual(select_value(first, "wind", "gust"), 7.9)
        self.assertEqual(select_value(first, "rain", "3h"), 0.42)
        # No rain object means a dry period
        self.assertEqual(select_value(second, "rain", "3h"), 0.0)
        # Missing gust is unknown, not zero
        self.assertIsNone(select_value(second, "wind", "gust"))

    def test_select_value_non_numeric(self):
        entry = {"dt": 1, "main": {"temp": "warm"}}
        with self.assertLogs(level='WARNING') as log:
            self.assertIsNone(select_value(entry, "main", "temp"))
        self.assertIn("Non-numeric main.temp", log.output[0])


class TestFrames(unittest.TestCase):

    def test_build_frame_values_follow_forecast_entries(self):
        frame = build_frame(FORECAST["list"], "A", "main", "feels_like")

        self.assertEqual(len(frame), 2)
        self.assertEqual([f.name for f in frame.fields], ["time", "value"])
        self.assertEqual(frame.fields[1].values, [10.2, 7.1])
        self.assertEqual(frame.fields[0].values[0], datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc))

    def test_build_frame_with_description(self):
        frame = build_frame(FORECAST["list"], "B", "clouds", "all", with_description=True)

        self.assertEqual(len(frame.fields), 3)
        self.assertEqual(frame.fields[2].values, ["light rain", "broken clouds"])
        self.assertEqual(frame.fields[1].values, [75.0, 60.0])

    def test_build_frame_bad_timestamp(self):
        with self.assertRaises(QueryError) as ctx:
            build_frame([{"main": {"temp": 1}}], "A", "main", "temp")
        self.assertEqual(ctx.exception.status_code, 502)

    def test_build_frame_malformed_entries(self):
        cases = {
            "group is a number": ([{"dt": 1700000000, "main": 5}], False),
            "entry is a string": (["oops"], False),
            "weather holds strings": ([{"dt": 1700000000, "main": {"temp": 1}, "weather": ["x"]}], True),
        }
        for name, (entries, with_description) in cases.items():
            with self.subTest(name):
                with self.assertRaises(QueryError) as ctx:
                    build_frame(entries, "A", "main", "temp", with_description=with_description)
                self.assertEqual(ctx.exception.status_code, 502)
                self.assertTrue(ctx.exception.message.startswith("Invalid response from OpenWeather"))

    def test_frame_json(self):
        encoded = build_frame(FORECAST["list"], "A", "wind", "speed").to_json()

        schema = encoded["schema"]
        self.assertEqual(schema["name"], "response")
        self.assertEqual(schema["refId"], "A")
        self.assertEqual(schema["fields"][0]["type"], "time")
        self.assertEqual(schema["fields"][0]["config"], {"displayName": "Time"})
        self.assertEqual(schema["fields"][1]["config"], {"displayName": "wind - speed"})
        self.assertEqual(encoded["data"]["values"][0], [1700000000000, 1700010800000])
        self.assertEqual(encoded["data"]["values"][1], [4.1, 3.3])
        # Must survive the trip to the host
        json.dumps(encoded)


class TestOpenWeather(unittest.TestCase):

    def setUp(self):
        self.session = MagicMock()
        self.client = OpenWeather(FORECAST_URL, "secret", timeout=5, session=self.session)

    def test_fetch_forecast(self):
        self.session.get.return_value = _response()

        entries = self.client.fetch_forecast("Marburg", "imperial")

        self.assertEqual(len(entries), 2)
        self.session.get.assert_called_once_with(
            FORECAST_URL,
            params={"q": "Marburg", "appid": "secret", "units": "imperial"},
            timeout=5,
        )

    def test_status_codes_are_distinguished(self):
        cases = {
            401: "Invalid API key",
            404: "City not found: Atlantis",
            429: "API rate limit exceeded",
            500: "API request failed with status code: 500",
        }
        for status_code, message in cases.items():
            with self.subTest(status_code=status_code):
                self.session.get.return_value = _response(status_code, payload={"cod": str(status_code)})
                with self.assertLogs(level='ERROR'):
                    with self.assertRaises(OpenWeatherError) as ctx:
                        self.client.fetch_forecast("Atlantis")
                self.assertEqual(ctx.exception.message, message)
                self.assertEqual(ctx.exception.status_code, status_code)

    def test_api_key_is_masked_in_logs(self):
        self.session.get.return_value = _response(401)

        with self.assertLogs(level='ERROR') as log:
            with self.assertRaises(OpenWeatherError):
                self.client.fetch_forecast("Marburg")

        self.assertNotIn("secret", ''.join(log.output))
        self.assertIn("appid=***", ''.join(log.output))

    def test_timeout(self):
        self.session.get.side_effect = requests.exceptions.Timeout()

        with self.assertLogs(level='ERROR'):
            with self.assertRaises(OpenWeatherError) as ctx:
                self.client.fetch_forecast("Marburg")

        self.assertEqual(ctx.exception.status_code, 504)

    def test_connection_error(self):
        self.session.get.side_effect = requests.exceptions.ConnectionError("refused")

        with self.assertLogs(level='ERROR'):
            with self.assertRaises(OpenWeatherError) as ctx:
                self.client.fetch_forecast("Marburg")

        self.assertEqual(ctx.exception.status_code, 502)
        self.assertIn("refused", ctx.exception.message)

    def test_connection_error_hides_api_key(self):
        self.session.get.side_effect = requests.exceptions.ConnectionError(
            "Max retries exceeded with url: /x?q=Marburg&appid=secret&units=metric"
        )

        with self.assertLogs(level='ERROR') as log:
            with self.assertRaises(OpenWeatherError) as ctx:
                self.client.fetch_forecast("Marburg")

        self.assertNotIn("secret", ctx.exception.message)
        self.assertNotIn("secret", ''.join(log.output))
        self.assertIn("appid=***", ctx.exception.message)

    def test_invalid_json(self):
        response = _response()
        response.json.side_effect = ValueError("Expecting value")
        self.session.get.return_value = response

        with self.assertLogs(level='ERROR'):
            with self.assertRaises(OpenWeatherError) as ctx:
                self.client.fetch_forecast("Marburg")

        self.assertIn("Invalid response from OpenWeather", ctx.exception.message)

    def test_missing_list(self):
        self.session.get.return_value = _response(payload={"cod": "200"})

        with self.assertLogs(level='ERROR'):
            with self.assertRaises(OpenWeatherError):
                self.client.fetch_forecast("Marburg")


class TestDatasource(unittest.TestCase):

    def setUp(self):
        self.session = MagicMock()
        self.session.get.return_value = _response()
        self.datasource = _datasource(self.session)

    def test_query_returns_frame(self):
        response = self.datasource.query(
            {"refId": "A", "city": "Marburg", "mainParameter": "main", "subParameter": "temp", "units": "metric"}
        )

        self.assertIsNone(response.error)
        self.assertEqual(len(response.frames), 1)
        self.assertEqual(response.frames[0].fields[1].values, [11.5, 9.0])
        self.assertEqual(response.frames[0].ref_id, "A")
        params = self.session.get.call_args.kwargs["params"]
        self.assertEqual(params["units"], "metric")

    def test_query_empty_city_returns_nothing(self):
        response = self.datasource.query({"refId": "A", "city": ""})

        self.assertEqual(response.frames, [])
        self.assertIsNone(response.error)
        self.session.get.assert_not_called()

    def test_query_raw_json_payload(self):
        raw = {"refId": "C", "json": json.dumps({"city": "Marburg", "mainParameter": "rain", "subParameter": "3h"})}

        response = self.datasource.query(raw)

        self.assertEqual(response.frames[0].ref_id, "C")
        self.assertEqual(response.frames[0].fields[1].values, [0.42, 0.0])

    def test_query_embedded_json_object(self):
        raw = {"refId": "D", "json": {"city": "Marburg", "mainParameter": "main", "subParameter": "temp"}}

        response = self.datasource.query(raw)

        self.assertIsNone(response.error)
        self.assertEqual(response.frames[0].ref_id, "D")
        self.assertEqual(response.frames[0].fields[1].values, [11.5, 9.0])
        self.session.get.assert_called_once()

    def test_query_accepts_every_unit(self):
        for units in settings.UNITS:
            with self.subTest(units=units):
                response = self.datasource.query({"refId": "A", "city": "Marburg", "units": units})
                self.assertIsNone(response.error)
                self.assertEqual(self.session.get.call_args.kwargs["params"]["units"], units)

    def test_query_malformed_json(self):
        with self.assertLogs(level='WARNING'):
            response = self.datasource.query({"refId": "A", "json": "{city: "})

        self.assertEqual(response.status, 400)
        self.assertTrue(response.error.startswith("json unmarshal"))
        self.session.get.assert_not_called()

    def test_query_invalid_units(self):
        with self.assertLogs(level='WARNING'):
            response = self.datasource.query({"refId": "A", "city": "Marburg", "units": "kelvin"})

        self.assertEqual(response.status, 400)
        self.assertIn("units", response.error)

    def test_query_unknown_parameter(self):
        with self.assertLogs(level='WARNING'):
            response = self.datasource.query({"refId": "A", "city": "Marburg", "mainParameter": "snow"})

        self.assertEqual(response.status, 400)
        self.session.get.assert_not_called()

    def test_query_upstream_error(self):
        self.session.get.return_value = _response(404)

        with self.assertLogs(level='WARNING'):
            response = self.datasource.query({"refId": "A", "city": "Atlantis"})

        self.assertEqual(response.status, 404)
        self.assertEqual(response.error, "City not found: Atlantis")

    def test_query_upstream_statuses(self):
        cases = {
            401: "Invalid API key",
            404: "City not found: Marburg",
            429: "API rate limit exceeded",
        }
        for status_code, message in cases.items():
            with self.subTest(status_code=status_code):
                self.session.get.return_value = _response(status_code)
                with self.assertLogs(level='WARNING'):
                    response = self.datasource.query({"refId": "A", "city": "Marburg"})
                self.assertEqual(response.status, status_code)
                self.assertEqual(response.error, message)

    def test_query_malformed_forecast_entry(self):
        self.session.get.return_value = _response(payload={"list": [{"dt": 1700000000, "main": 5}]})

        with self.assertLogs(level='WARNING'):
            responses = self.datasource.query_data([{"refId": "A", "city": "Marburg"}])

        self.assertEqual(responses["A"].status, 502)
        self.assertTrue(responses["A"].error.startswith("Invalid response from OpenWeather"))

    def test_query_data_non_string_ref_id(self):
        queries = [
            {"refId": ["A"], "city": "Marburg"},
            {"refId": "B", "city": "Marburg"},
        ]

        with self.assertLogs(level='WARNING'):
            responses = self.datasource.query_data(queries)

        self.assertEqual(responses["A"].status, 400)
        self.assertIn("refId", responses["A"].error)
        self.assertEqual(responses["B"].status, 200)
        self.assertEqual(len(responses["B"].frames), 1)

    def test_query_survives_unwritable_log_name(self):
        with tempfile.TemporaryDirectory() as log_dir:
            datasource = _datasource(self.session, forecast_log_dir=log_dir)
            with self.assertLogs(level='ERROR') as log:
                response = datasource.query({"refId": "A", "city": "Mar\x00burg"})

        self.assertIsNone(response.error)
        self.assertEqual(len(response.frames), 1)
        self.assertIn("Failed to write forecast log", ''.join(log.output))

    def test_query_data_isolates_failures(self):
        queries = [
            {"refId": "A", "city": "Marburg", "mainParameter": "wind", "subParameter": "deg"},
            {"refId": "B", "city": 42},
        ]

        with self.assertLogs(level='WARNING'):
            responses = self.datasource.query_data(queries)

        self.assertEqual(set(responses), {"A", "B"})
        self.assertEqual(responses["A"].frames[0].fields[1].values, [230.0, 250.0])
        self.assertEqual(responses["B"].status, 400)

    def test_query_writes_forecast_log(self):
        with tempfile.TemporaryDirectory() as log_dir:
            datasource = _datasource(self.session, forecast_log_dir=log_dir)
            datasource.query({"refId": "A", "city": "Marburg", "withDescription": True})

            files = os.listdir(log_dir)
            self.assertEqual(len(files), 1)
            self.assertTrue(files[0].startswith("weather_Marburg_"))

    def test_health_missing_api_key(self):
        datasource = Datasource(PluginSettings(api_key=""), client=OpenWeather(FORECAST_URL, "", session=self.session))

        with self.assertLogs(level='WARNING'):
            result = datasource.check_health()

        self.assertEqual(result.status, HEALTH_ERROR)
        self.assertEqual(result.message, "API key is missing")
        self.session.get.assert_not_called()

    def test_health_without_probe(self):
        result = _datasource(self.session, health_check_city="").check_health()

        self.assertEqual(result.status, HEALTH_OK)
        self.session.get.assert_not_called()

    def test_health_probe(self):
        result = self.datasource.check_health()

        self.assertEqual(result.status, HEALTH_OK)
        self.assertEqual(self.session.get.call_args.kwargs["params"]["q"], "London")

    def test_health_probe_invalid_key(self):
        self.session.get.return_value = _response(401)

        with self.assertLogs(level='WARNING'):
            result = self.datasource.check_health()

        self.assertEqual(result.status, HEALTH_ERROR)
        self.assertEqual(result.message, "Invalid API key")

    def test_health_probe_upstream_statuses(self):
        cases = {
            401: "Invalid API key",
            404: "City not found: London",
            429: "API rate limit exceeded",
        }
        for status_code, message in cases.items():
            with self.subTest(status_code=status_code):
                self.session.get.return_value = _response(status_code)
                with self.assertLogs(level='WARNING'):
                    result = self.datasource.check_health()
                self.assertEqual(result.status, HEALTH_ERROR)
                self.assertEqual(result.message, message)

    def test_dispose_closes_session(self):
        self.datasource.dispose()
        self.session.close.assert_called_once()

    def test_decode_query_rejects_non_object(self):
        with self.assertRaises(QueryError):
            decode_query(["city"])


class TestPluginSettings(unittest.TestCase):

    def test_load_plugin_settings(self):
        loaded = load_plugin_settings({
            "jsonData": {"path": "http://localhost:9999/forecast", "healthCheckCity": "", "timeout": "2.5"},
            "decryptedSecureJsonData": {"apiKey": "abc"},
        })

        self.assertEqual(loaded.path, "http://localhost:9999/forecast")
        self.assertEqual(loaded.api_key, "abc")
        self.assertEqual(loaded.health_check_city, "")
        self.assertEqual(loaded.timeout, 2.5)
        self.assertIsNone(loaded.forecast_log_dir)

    def test_load_plugin_settings_defaults(self):
        loaded = load_plugin_settings({"jsonData": "{}"})

        self.assertEqual(loaded.path, FORECAST_URL)
        self.assertEqual(loaded.api_key, "")
        self.assertEqual(loaded.health_check_city, "London")

    def test_load_plugin_settings_invalid(self):
        with self.assertRaises(SettingsError):
            load_plugin_settings({"jsonData": "{not json"})
        with self.assertRaises(SettingsError):
            load_plugin_settings({"jsonData": {"timeout": "soon"}})

    def test_load_default_settings(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "datasource.ini")
            with open(path, "w") as f:
                f.write("[datasource]\napi_key = \"from-file\"\nhealth_check_city = Berlin\ntimeout = 3\n")

            with self.assertLogs(level='INFO'):
                instance_settings = load_default_settings(path)

        loaded = load_plugin_settings(instance_settings)
        self.assertEqual(loaded.api_key, "from-file")
        self.assertEqual(loaded.health_check_city, "Berlin")
        self.assertEqual(loaded.timeout, 3.0)

    def test_load_default_settings_missing_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertLogs(level='WARNING'):
                instance_settings = load_default_settings(os.path.join(tmp, "missing.ini"))

        self.assertEqual(instance_settings["uid"], "default")
        self.assertEqual(instance_settings["jsonData"], {})


class TestInstanceManager(unittest.TestCase):

    def test_instances_are_reused_until_settings_change(self):
        created = []

        def factory(instance_settings):
            datasource = MagicMock()
            created.append(datasource)
            return datasource

        manager = InstanceManager(factory=factory)
        first = manager.get({"uid": "ow", "updated": 1})
        self.assertIs(manager.get({"uid": "ow", "updated": 1}), first)

        with self.assertLogs(level='INFO'):
            second = manager.get({"uid": "ow", "updated": 2})

        self.assertIsNot(second, first)
        first.dispose.assert_called_once()
        self.assertEqual(len(manager), 1)

        manager.dispose_all()
        second.dispose.assert_called_once()
        self.assertEqual(len(manager), 0)


class TestForecastLog(unittest.TestCase):

    def test_write_forecast_log(self):
        frame = build_frame(FORECAST["list"], "A", "main", "temp", with_description=True)

        with tempfile.TemporaryDirectory() as log_dir:
            self.assertTrue(write_forecast_log(log_dir, "Marburg", frame))
            path = log_file_path(log_dir, "Marburg")
            lines = path.read_text(encoding="utf-8").splitlines()

        self.assertEqual(lines[0], "Weather data for Marburg (main - temp)")
        self.assertEqual(lines[1], "Time: 2023-11-14 22:13:20, Value: 11.50, Description: light rain")
        self.assertEqual(len(lines), 3)

    def test_write_forecast_log_failure_is_logged(self):
        frame = build_frame(FORECAST["list"], "A", "main", "temp")

        with tempfile.NamedTemporaryFile() as not_a_dir:
            with self.assertLogs(level='ERROR') as log:
                self.assertFalse(write_forecast_log(not_a_dir.name, "Marburg", frame))

        self.assertIn("Failed to write forecast log", log.output[0])


class TestHttpSurface(unittest.TestCase):

    def setUp(self):
        self.session = MagicMock()
        self.session.get.return_value = _response()

        def factory(instance_settings):
            plugin_settings = load_plugin_settings(instance_settings)
            client = OpenWeather(plugin_settings.path, plugin_settings.api_key, session=self.session)
            return Datasource(plugin_settings, client=client)

        defaults = {"uid": "default", "updated": 0, "jsonData": {}, "decryptedSecureJsonData": {}}
        self.instances = InstanceManager(factory=factory)
        self.app = create_app(self.instances, defaults_loader=lambda: defaults)
        self.plugin_context = {
            "dataSourceInstanceSettings": {
                "uid": "ow", "updated": 1,
                "jsonData": {"healthCheckCity": ""},
                "decryptedSecureJsonData": {"apiKey": "secret"},
            }
        }

    def test_injected_instance_manager_is_used(self):
        # A fresh manager holds no instances yet
        self.assertEqual(len(self.instances), 0)
        self.assertIs(self.app.state.instances, self.instances)

    def test_query_endpoint(self):
        body = {
            "pluginContext": self.plugin_context,
            "queries": [
                {"refId": "A", "city": "Marburg", "mainParameter": "main", "subParameter": "humidity"},
                {"refId": "B", "city": "Marburg", "units": "kelvin"},
            ],
        }

        with TestClient(self.app) as client:
            response = client.post("/query", json=body)

        self.assertEqual(response.status_code, 200)
        results = response.json()["results"]
        self.assertEqual(results["A"]["status"], 200)
        self.assertEqual(results["A"]["frames"][0]["data"]["values"][1], [81.0, 77.0])
        self.assertEqual(results["B"]["status"], 400)
        self.session.close.assert_called_once()

    def test_query_endpoint_invalid_settings(self):
        body = {
            "pluginContext": {"dataSourceInstanceSettings": {"uid": "bad", "jsonData": "{oops"}},
            "queries": [{"refId": "A", "city": "Marburg"}],
        }

        with TestClient(self.app) as client:
            with self.assertLogs(level='ERROR'):
                response = client.post("/query", json=body)

        self.assertEqual(response.json()["results"]["A"]["status"], 400)

    def test_health_endpoint(self):
        with TestClient(self.app) as client:
            response = client.post("/health", json={"pluginContext": self.plugin_context})

        self.assertEqual(response.json(), {"status": "OK", "message": "Data source is working"})

    def test_default_health_endpoint_without_api_key(self):
        with TestClient(self.app) as client:
            response = client.get("/health")

        self.assertEqual(response.json(), {"status": "ERROR", "message": "API key is missing"})


if __name__ == '__main__':
    unittest.main()
