"""
Shared utilities for the Health Status layer.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- crypt: RSA/AES primitives used by the record codec
- base_service: FastAPI service skeleton
- test_helpers: Factories for rule documents, history entries and key pairs

Any cross-service logic should live here to avoid import cycles across
service packages. Runtime modules must not import from service_* packages;
test_helpers is the one exception.
"""
