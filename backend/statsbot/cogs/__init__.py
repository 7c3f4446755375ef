"""Discord cogs for the stats bot"""
