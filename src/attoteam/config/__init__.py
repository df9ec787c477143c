"""Configuration loading for attoteam."""
