"""Pipeline stages, transitions and the run driver."""
