"""Quote pricing engine for Manito service providers."""
