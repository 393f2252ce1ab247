"""herotrack server-side services.

- Ingestion Service validates, deduplicates and persists batches
- Aggregation Service maintains classroom rollups
- Retention Service archives and purges on a schedule
- Audit Service keeps the hash-chained audit trail
- Admin Service exposes operator triggers and health
"""
