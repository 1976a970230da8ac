"""Scan agents: invocation, pipeline stages and the batch scheduler."""
