"""
Exception hierarchy for mqtt_link.

ConfigurationError is fatal and surfaces before any network attempt.
MqttClientError is raised by the protocol client adapters and is caught
by the pool during teardown. ConnectError and PublishError reach the caller.
"""


class MqttLinkError(Exception):
    """Base class for every error raised by mqtt_link."""


class ConfigurationError(MqttLinkError):
    """Missing or malformed configuration."""


class PasswordError(ConfigurationError):
    """An encoded secret could not be decoded."""


class MqttClientError(MqttLinkError):
    """A failure reported by the underlying protocol client library."""


class ConnectError(MqttLinkError):
    """A client could not connect to the broker."""


class SubscribeError(MqttClientError):
    """A subscribe or unsubscribe request failed."""


class PublishError(MqttLinkError):
    """A message could not be published."""
