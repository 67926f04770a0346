"""Mission loop: contract parsing, state, prompts and completion gates for main sessions."""
