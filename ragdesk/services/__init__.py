"""Business services: ingestion, jobs, retrieval, chat and admission control."""
