"""Operator provisioning standalone RGW object store gateways."""

__version__ = "0.1.0"
