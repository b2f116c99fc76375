"""mining — rail pathfinding, rail storage and rail network planning."""
