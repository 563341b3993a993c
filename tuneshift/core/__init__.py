"""Session context, publisher and the controller that wires the core together."""
