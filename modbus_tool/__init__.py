"""
modbus-tool

Modbus poll scheduler and single-outstanding transport.
"""

__version__ = "1.0.0"
