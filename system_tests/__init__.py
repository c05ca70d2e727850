"""
End-to-end tests of the harness against the real stack.

PostgreSQL and Kafka run in Docker; the sample pub/sub service is deployed
in-process. Everything here is skipped when Docker is unavailable.
"""
