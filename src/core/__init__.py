"""Core domain package for telewake.

Core holds trigger scheduling, log synchronization and per-topic turn control
with no adapter-specific code, keeping the engine portable and testable with
fakes.
"""
