"""Support chat relay: classify, route to departments, stream the reply."""
