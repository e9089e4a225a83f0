"""Domain services: room coordination and the track catalog.

Routes and socket handlers import from here; transport concerns stay out.
"""
