import logging
import re
import time

import requests

import settings

STATUS_MESSAGES = {
    401: "Invalid API key",
    429: "API rate limit exceeded",
}


class OpenWeatherError(Exception):
    """OpenWeather request failed. status_code is forwarded to the query response."""

    def __init__(self, message, status_code=502):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _mask_key(url):
    """Hide the API key before a URL goes to the log."""
    return re.sub(r"appid=[^&]*", "appid=***", url)


class OpenWeather:

    def __init__(self, path, api_key, timeout=settings.REQUEST_TIMEOUT, session=None):
        self.path = path
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def build_params(self, city, units):
        return {"q": city, "appid": self.api_key, "units": units}

    def fetch_forecast(self, city, units=settings.DEFAULT_UNITS):
        """
        Fetch the 5-day/3-hour forecast for a city.

        Returns the forecast entries ('list' of the response). Any failure is
        raised as OpenWeatherError carrying the message shown to the user.
        """
        start = time.time()

        try:
            response = self.session.get(self.path, params=self.build_params(city, units), timeout=self.timeout)
        except requests.exceptions.Timeout:
            duration = time.time() - start
            logging.error(f"OWM      : Timeout for {city} after {duration:.1f}s")
            raise OpenWeatherError(f"Request to OpenWeather failed: timed out after {duration:.1f}s", 504)
        except requests.exceptions.RequestException as e:
            logging.error(f"OWM      : Request failed for {city} - {_mask_key(str(e))[:80]}")
            raise OpenWeatherError(f"Request to OpenWeather failed: {_mask_key(str(e))[:80]}")

        duration = time.time() - start
        api_url = _mask_key(str(response.url or self.path))

        if response.status_code != 200:
            logging.error(f"OWM      : Failed [HTTP {response.status_code}] {city} - {api_url}")
            if response.status_code == 404:
                message = f"City not found: {city}"
            else:
                message = STATUS_MESSAGES.get(
                    response.status_code,
                    f"API request failed with status code: {response.status_code}",
                )
            raise OpenWeatherError(message, response.status_code)

        try:
            data = response.json()
            entries = data["list"]
        except (KeyError, TypeError, ValueError) as e:
            logging.error(f"OWM      : Invalid response for {city} - {str(e)}")
            raise OpenWeatherError(f"Invalid response from OpenWeather: {e}")

        if not isinstance(entries, list):
            logging.error(f"OWM      : Invalid response for {city} - 'list' is not an array")
            raise OpenWeatherError("Invalid response from OpenWeather: 'list' is not an array")

        logging.debug(f"OWM      : Fetched {city} ({len(entries)} entries) in {duration:.2f}s")
        return entries

    def close(self):
        """Close the HTTP session."""
        self.session.close()
