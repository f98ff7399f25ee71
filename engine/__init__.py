"""Extraction engine: workbook loading, anchor resolution, mapping rules and archive fact extraction."""
