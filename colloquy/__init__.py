"""colloquy: a terminal chat client with plain-text history files."""
