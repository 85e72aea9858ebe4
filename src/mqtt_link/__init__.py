"""
mqtt_link

This package provides shared, reusable MQTT broker connections for
the publisher and subscriber endpoints of a messaging pipeline,
with pooled protocol clients and clean teardown under partial failure.
"""
__version__ = "0.1.0"
