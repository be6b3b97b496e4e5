"""Speech-to-command daemon that streams microphone audio to ffmpeg's whisper filter."""
