"""Background workers for the hiring pipeline backend (see app.tasks)."""
