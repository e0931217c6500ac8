"""Invoice persistence (apply side of the webhook pipeline) and read API."""
