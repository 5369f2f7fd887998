"""Despacho de comandos y correlación de respuestas."""

from .correlator import CommandCorrelator, CommandPublisher, new_correlation_id, thread_timer

__all__ = ["CommandCorrelator", "CommandPublisher", "new_correlation_id", "thread_timer"]
