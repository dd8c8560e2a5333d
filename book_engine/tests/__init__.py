# Test package for the Book Assignment Engine
