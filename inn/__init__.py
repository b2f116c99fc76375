"""inn — innkeeper work/break cycle, generated events and payouts."""
