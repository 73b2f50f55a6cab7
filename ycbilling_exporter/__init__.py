"""Prometheus exporter for the balance of a Yandex Cloud billing account."""

__version__ = "0.1.0"
