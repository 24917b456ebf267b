"""Print the effective logging and relay configuration as JSON."""

import dataclasses
import json
import sys

from dotenv import load_dotenv
from sqlalchemy.engine import make_url

from app.app_logging import get_log_config
from app.core.config import get_relay_settings


def get_relay_config():
    settings = dataclasses.asdict(get_relay_settings())
    settings["admin_token"] = "***" if settings["admin_token"] else None
    settings["database_url"] = make_url(settings["database_url"]).render_as_string(
        hide_password=True
    )
    return settings


def main():
    load_dotenv()
    config = {"logging": get_log_config(), "relay": get_relay_config()}
    sys.stdout.write(json.dumps(config, indent=2) + "\n")


if __name__ == "__main__":
    main()
