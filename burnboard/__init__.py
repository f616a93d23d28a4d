"""Burnboard: weekly, monthly and lifetime calorie-burn leaderboards."""
