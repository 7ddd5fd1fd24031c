import os

# Plugin identity as registered with Grafana
PLUGIN_ID = "grafana-openweather-datasource"

# OpenWeather 5-day / 3-hour forecast endpoint
OPENWEATHER_FORECAST_URL = "https://api.openweathermap.org/data/2.5/forecast"

# Seconds before an OpenWeather request is abandoned
REQUEST_TIMEOUT = 10

# Units accepted by the OpenWeather "units" parameter
UNITS = ("standard", "metric", "imperial")
DEFAULT_UNITS = "metric"

# Selectable parameters: main parameter -> sub parameters (first one is the default).
# Sub parameter names match the forecast entry JSON keys.
PARAMETERS = {
    "main": ["temp", "feels_like", "temp_min", "temp_max", "pressure", "sea_level", "grnd_level", "humidity"],
    "wind": ["speed", "deg", "gust"],
    "clouds": ["all"],
    "rain": ["3h"],
}
DEFAULT_MAIN_PARAMETER = "main"

# OpenWeather drops the "rain" object for dry periods, so missing means zero
ZERO_WHEN_ABSENT = {"rain"}

# City probed by the health check (empty string disables the live probe)
HEALTH_CHECK_CITY = "London"

# Provisioning defaults used when a request carries no instance settings
DATASOURCE_CONFIG = os.environ.get("OPENWEATHER_CONFIG", "/etc/openweather-datasource/datasource.ini")
CONFIG_SECTION = "datasource"

# HTTP surface
SERVER_HOST = os.environ.get("OPENWEATHER_HOST", "127.0.0.1")
SERVER_PORT = int(os.environ.get("OPENWEATHER_PORT", "50051"))

LOG_LEVEL = os.environ.get("OPENWEATHER_LOG_LEVEL", "INFO")
LOG_FORMAT = '%(asctime)s - %(levelname)8s - %(message)s'
