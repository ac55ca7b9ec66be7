"""StudyFlow scheduling backend."""
