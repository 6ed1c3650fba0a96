"""Control plane: periodic sweeps."""
