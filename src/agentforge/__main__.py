from agentforge.cli.app import app

app()
