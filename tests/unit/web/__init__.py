"""Unit tests for mailmine web route modules.

Routes are exercised through FastAPI's TestClient against a mocked
DiscoveryEngine; the engine itself is covered by the integration tests.
"""
