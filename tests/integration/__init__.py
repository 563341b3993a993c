"""
Integration tests for Percepta Python service.

These tests require:
- A running Postgres database with pgvector extension
- DATABASE_URL environment variable pointing to test database
- External services (Twitch, OpenAI) are mocked
"""

