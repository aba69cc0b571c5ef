"""
Tests for the blue/green deployment controller.
"""
