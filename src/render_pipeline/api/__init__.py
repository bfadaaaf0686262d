"""HTTP surface: job submission and status polling."""
