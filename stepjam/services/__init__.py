"""Service collaborators for StepJam Live."""
