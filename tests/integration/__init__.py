"""
Integration tests for the load-comparison engine.

These tests run real worker threads and, for end-to-end runs, a stub
login backend served over HTTP:
- Scenario scheduling and concurrency envelopes
- Graceful stop and abandonment of slow users
- Full runs from configuration to report artifacts
"""
