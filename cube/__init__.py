"""
Fact table validation, cube construction and the query store.

Modules (dependency order):
    sql: identifier-safe SQL helpers and namespace table names
    note_codes: fixed note code vocabulary
    view_table: diagnostic rows -> {headers, data}
    loaders: explicit dataset/revision loaders returning value objects
    column_roles: source assignment -> fact table definitions
    materializer: create and load a revision's fact table
    validator: numeric, key and note code checks
    builder: per-locale core views and consumer views
    consumer: view selection and base query construction
    query_store: cached base queries keyed by request hash

Usage:
    from cube.validator import validate_fact_table
    from cube.builder import CubeBuilder
    from cube.query_store import QueryStore
"""
