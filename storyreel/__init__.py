"""Storyreel worker: turns character photos and scene prompts into short animated stories."""
