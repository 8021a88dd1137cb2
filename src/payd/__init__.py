"""PayD: payroll scheduling with simulate-before-broadcast and webhook confirmation."""
