"""Invoice creation and settlement."""
