"""Chain, beacon and curve utilities for the Anyrand operator."""
