import logging
from datetime import datetime
from pathlib import Path


def log_file_path(log_dir, city, day=None):
    day = day or datetime.now()
    safe_city = city.replace("/", "_").replace("\\", "_")
    return Path(log_dir) / f"weather_{safe_city}_{day.strftime('%Y-%m-%d')}.txt"


def write_forecast_log(log_dir, city, frame):
    """
    Dump a query's series to <log_dir>/weather_<city>_<date>.txt.
    Returns True on success. Failures are logged, never raised.
    """
    times, values = frame.fields[0].values, frame.fields[1].values
    label = frame.fields[1].display_name
    descriptions = frame.fields[2].values if len(frame.fields) > 2 else [""] * len(times)

    try:
        path = log_file_path(log_dir, city)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            f.write(f"Weather data for {city} ({label})\n")
            for ts, value, description in zip(times, values, descriptions):
                shown = "null" if value is None else f"{value:.2f}"
                line = f"Time: {ts.strftime('%Y-%m-%d %H:%M:%S')}, Value: {shown}"
                if description:
                    line += f", Description: {description}"
                f.write(line + "\n")
        logging.debug(f"LOG      : Wrote {len(times)} entries for {city} to {path}")
        return True
    except (OSError, ValueError) as e:
        logging.error(f"LOG      : Failed to write forecast log for {city}: {e}")
        return False
