"""AlphaMail: an email accountability partner."""
