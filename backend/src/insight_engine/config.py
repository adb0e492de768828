"""
Configuration loading.

Deployed processes read ``config.yaml`` from the S3 bucket named by
``INSIGHTS_CONFIG_BUCKET``; local runs read it from disk. Either way a missing
or unreadable file falls back to ``defaults.default_config()``.
"""

import logging
import os

import boto3
import yaml

from insight_engine.defaults import default_config

logger = logging.getLogger(__name__)

CONFIG_BUCKET = os.environ.get("INSIGHTS_CONFIG_BUCKET", "")


def load_config(config_path: str = "config.yaml") -> dict:
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def get_config(overrides: dict | None = None, config_path: str = "config.yaml") -> dict:
    """Load engine config from S3 (deployed) or local file (dev)."""
    config = default_config()

    if CONFIG_BUCKET:
        try:
            obj = boto3.client("s3").get_object(Bucket=CONFIG_BUCKET, Key="config.yaml")
            loaded = yaml.safe_load(obj["Body"].read()) or {}
        except Exception as e:
            logger.warning("Could not load config from s3://%s/config.yaml: %s", CONFIG_BUCKET, e)
            loaded = {}
    else:
        try:
            loaded = load_config(config_path)
        except FileNotFoundError:
            loaded = {}

    for section, values in loaded.items():
        if isinstance(values, dict) and isinstance(config.get(section), dict):
            config[section].update(values)
        else:
            config[section] = values

    if overrides:
        config.update(overrides)
    return config


def insight_settings(config: dict | None) -> dict:
    """The ``insights`` section with defaults filled in."""
    settings = dict(default_config()["insights"])
    if config:
        settings.update(config.get("insights") or {})
    return settings


def configure_logging():
    """Apply LOG_LEVEL to the package logger."""
    level = os.environ.get("LOG_LEVEL", "INFO")
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("insight_engine").setLevel(level)
