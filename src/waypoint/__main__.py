from waypoint.cli import app

app()
