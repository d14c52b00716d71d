"""
Test suite for crmadmin.

Unit tests run against an in-memory datastore (see conftest.py); no
PostgreSQL server is needed.
"""
