"""Pure cost engines: no I/O, no clock, deterministic for identical inputs."""
