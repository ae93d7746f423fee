"""Pure domain objects: amounts, clock, mutations and record snapshots."""
