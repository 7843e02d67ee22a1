"""Test package marker so test modules import under fully-qualified names."""
