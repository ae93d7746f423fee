"""Read-only query selectors returning frozen DTOs."""
