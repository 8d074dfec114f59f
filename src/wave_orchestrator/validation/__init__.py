"""CI polling and the per-item review/CI gate."""
