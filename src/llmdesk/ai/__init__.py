"""Inference engine abstractions and the llama.cpp adapter."""
