"""State store: ORM tables, repositories, engines and migrations."""
