"""Live session orchestration — connections, actors, manager."""
