"""HTTP application, configuration and wiring."""
