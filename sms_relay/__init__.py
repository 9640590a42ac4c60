"""SMS relay: queues send requests and paces them to a single modem over MQTT."""

__version__ = "1.0.0"
