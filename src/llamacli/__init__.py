"""
llamacli — interactive terminal assistant with streaming, tool use and
a shell confirmation gate.
"""

__version__ = "0.4.0"
