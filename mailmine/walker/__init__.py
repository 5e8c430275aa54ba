"""Background day walk and its supervisor."""
