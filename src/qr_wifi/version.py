"""Version information for QRWiFi."""

APP_VERSION = "0.1.0"
