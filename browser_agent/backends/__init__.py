"""Capability providers backed by local, remote and in-memory executors."""
