"""Database engine, declarative base, enums and ORM models."""
