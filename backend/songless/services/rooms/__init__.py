"""Multiplayer room coordination: store, round engine, guesses, chat,
presence and fan-out.
"""
