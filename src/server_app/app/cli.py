import os
import logging
from logging.config import dictConfig
import json


def configure_logging():
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig()
    level = logging.DEBUG if os.getenv("DEBUG", "").lower() in ("1", "true") else logging.INFO
    logging.getLogger().setLevel(level)


def invoke():
    configure_logging()

    from server_app.app.application import Application
    from server_app.app.config import load_settings

    settings = load_settings()

    (
        Application(settings)
        .use_initial_middlewares()
        .use_healthy_route()
        .use_root_route()
        .use_api_final_middlewares()
        .run(settings.http_port)
    )


if __name__ == "__main__":
    invoke()
