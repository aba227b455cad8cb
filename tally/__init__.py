"""Weekly behavior tracker."""
