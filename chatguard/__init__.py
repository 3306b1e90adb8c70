"""Write-path admission control for an anonymous, ephemeral chat."""
