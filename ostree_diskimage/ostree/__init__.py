"""OSTree commit store access and commit resolution."""
