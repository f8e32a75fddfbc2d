"""Single source for the package version."""

APP_VERSION = "0.3.0"
