"""Meridian M&E web application."""
