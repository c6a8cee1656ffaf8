from server_app.app.cli import invoke

invoke()
