# ABOUTME: Store package initialization
# ABOUTME: Concrete implementations of the persistence contracts
