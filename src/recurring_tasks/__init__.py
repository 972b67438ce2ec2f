"""Long-running recurring agent tasks with durable progress and control signals."""
