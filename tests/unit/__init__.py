"""
Unit tests for the load-comparison engine.

Fast tests without worker threads or network traffic.
"""
