"""Rule Store: ORM tables, sessions and queries."""
