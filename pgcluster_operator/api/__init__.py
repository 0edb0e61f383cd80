"""FastAPI intent API for PostgresCluster resources."""
