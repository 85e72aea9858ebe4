"""
Verify package structure and module imports.
Ensures that the core modules can be imported without syntax errors,
confirming correct package setup and path configuration.
"""

def test_connection_imports():
    """Assert that the connection modules can be imported without syntax errors."""
    try:
        import mqtt_link.connection.clients
        import mqtt_link.connection.config_loader
        import mqtt_link.connection.manager
        import mqtt_link.connection.options
        import mqtt_link.connection.pool
        import mqtt_link.connection.ssl_properties
        success = True
    except ImportError as e:
        success = False
        print(f"Connection Import Failed: {e}")

    assert success is True


def test_endpoint_imports():
    """Assert that the endpoint modules can be imported without syntax errors."""
    try:
        import mqtt_link.endpoint.consumer
        import mqtt_link.endpoint.producer
        success = True
    except ImportError as e:
        success = False
        print(f"Endpoint Import Failed: {e}")

    assert success is True


def test_trace_level_is_registered():
    """The TRACE level shows up by name in log records."""
    import logging
    from mqtt_link.log import TRACE

    assert logging.getLevelName(TRACE) == "TRACE"
