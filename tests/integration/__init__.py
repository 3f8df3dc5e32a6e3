"""
Integration tests for usermigration.

These tests run the migration against real databases:
- SQLite through aiosqlite (a temporary file per test)
- PostgreSQL through testcontainers, when Docker is available

Tests are skipped automatically if a backend is not available.

Run integration tests:
    pytest tests/integration/ -v

Run only SQLite tests:
    pytest tests/integration/ -v -m sqlite

Skip integration tests:
    pytest tests/ -v -m "not integration"
"""
