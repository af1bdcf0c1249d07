"""Email signals: extraction, processors, facts and decisioning."""
