"""Benchmark runner for stage graphs of SQL queries against Presto and Trino."""

__version__ = "0.1.0"