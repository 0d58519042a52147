"""Services built on the database layer: resilience, metrics, transactions, migration."""
