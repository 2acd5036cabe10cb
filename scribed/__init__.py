"""Audio capture, level monitoring and transcription sessions daemon."""
