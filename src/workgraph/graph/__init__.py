"""Work graph model, storage and scheduling rules."""
