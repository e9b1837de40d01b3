"""
AI-T Hub Test Suite
===================

Run all tests:
    pytest tests/ -v

Run with coverage:
    pytest tests/ --cov=ai_thub --cov-report=html

Security note: These tests use mocked HTTP transports and
do not require real API keys.
"""
