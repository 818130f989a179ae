"""Stage services: stateful orchestration over the engines and the kernel."""
