"""Core infrastructure shared by the memory subsystem: config, logging, results, runtime."""
