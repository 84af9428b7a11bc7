"""Core models, backend selection and the export pipeline."""
