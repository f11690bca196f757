"""Package version."""

APP_VERSION = "0.3.0"
