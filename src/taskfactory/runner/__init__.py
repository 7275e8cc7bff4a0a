"""Task store, factory registry and tick worker around the engine."""
