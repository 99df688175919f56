"""Infrastructure: PostgreSQL persistence, Solana adapter, health monitoring."""
