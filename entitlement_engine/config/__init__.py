"""Configuration: environment settings and the billing catalog."""
