"""URL helpers and component wiring"""
