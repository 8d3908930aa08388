"""
Shared infrastructure for table-mirror.

- db_pool: pooled pyodbc / psycopg2 connections
- logging, tracing, metrics: observability
- retry: transient database error classification
- sql_safety, database_types: identifier validation and dialect helpers
- vault_client: credentials from HashiCorp Vault
"""
