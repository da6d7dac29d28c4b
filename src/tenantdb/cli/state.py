"""Global CLI options shared by every command."""


class GlobalState:
    json_output: bool = False
    verbose: bool = False
    database: str | None = None


state = GlobalState()
