"""Domain constants shared by the backend and the sync client."""
