"""LearnHub enrollment and progress tracking service."""
